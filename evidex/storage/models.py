"""
Evidex Storage Models

SQLAlchemy tables for persisted analysis results.
"""

import json
from typing import Any

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

from ..utils.helpers import get_current_timestamp

Base = declarative_base()


class AnalysisResult(Base):
    """One JSON result blob of an analysis, keyed by result type."""
    __tablename__ = "analysis_results"
    __table_args__ = (
        UniqueConstraint("analysis_id", "result_type", name="uq_analysis_result"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    analysis_id = Column(String(36), nullable=False, index=True)
    result_type = Column(String(50), nullable=False)  # analysis, events
    data = Column(Text, nullable=False)

    created_at = Column(DateTime, default=get_current_timestamp)
    updated_at = Column(DateTime, default=get_current_timestamp, onupdate=get_current_timestamp)

    def get_data(self) -> Any:
        return json.loads(self.data)

    def __repr__(self):
        return f"<AnalysisResult {self.analysis_id}/{self.result_type}>"
