"""
Evidex Result Store

Data access layer for analysis result blobs.
"""

import json
import logging
from typing import Any, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AnalysisResult
from ..utils.helpers import get_current_timestamp

logger = logging.getLogger(__name__)


class ResultStore:
    """
    Stores JSON-serializable results keyed by analysis id and result type.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize result store.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session

    async def _get_row(self, analysis_id: str, result_type: str) -> Optional[AnalysisResult]:
        query = select(AnalysisResult).where(
            AnalysisResult.analysis_id == analysis_id,
            AnalysisResult.result_type == result_type,
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def save(self, analysis_id: str, result_type: str, data: Any) -> AnalysisResult:
        """
        Insert or replace a result.

        Args:
            analysis_id: Owning analysis
            result_type: Result kind, e.g. "analysis" or "events"
            data: JSON-serializable value

        Returns:
            The stored row
        """
        payload = json.dumps(data)
        row = await self._get_row(analysis_id, result_type)

        if row is None:
            row = AnalysisResult(
                analysis_id=analysis_id,
                result_type=result_type,
                data=payload,
            )
            self.session.add(row)
        else:
            row.data = payload
            row.updated_at = get_current_timestamp()

        await self.session.flush()
        return row

    async def get(self, analysis_id: str, result_type: str) -> Optional[Any]:
        """Stored value, or None."""
        row = await self._get_row(analysis_id, result_type)
        return row.get_data() if row else None

    async def list_types(self, analysis_id: str) -> List[str]:
        query = select(AnalysisResult.result_type).where(AnalysisResult.analysis_id == analysis_id)
        result = await self.session.execute(query)
        return [row[0] for row in result.all()]

    async def delete(self, analysis_id: str, result_type: Optional[str] = None) -> int:
        """
        Delete results of an analysis.

        Args:
            analysis_id: Owning analysis
            result_type: Only this kind; None deletes all

        Returns:
            Number of rows removed
        """
        stmt = delete(AnalysisResult).where(AnalysisResult.analysis_id == analysis_id)
        if result_type is not None:
            stmt = stmt.where(AnalysisResult.result_type == result_type)

        result = await self.session.execute(stmt)
        return result.rowcount or 0
