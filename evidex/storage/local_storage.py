"""
Evidex Local Storage

Filesystem evidence storage with results kept in SQLite.
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any, List, Optional

import aiofiles
import aiofiles.os

from .database import DatabaseManager
from .result_store import ResultStore
from ..utils.helpers import format_bytes, generate_uuid, sanitize_filename

logger = logging.getLogger(__name__)


class LocalStorage:
    """
    Evidence files under <uploads>/<upload_id>/, per-analysis working
    directories under <analyses>/<analysis_id>/, result blobs in the
    analysis_results table.
    """

    def __init__(self, uploads_path: str, analyses_path: str, db_manager: DatabaseManager):
        """
        Initialize local storage.

        Args:
            uploads_path: Root directory for uploaded evidence
            analyses_path: Root directory for analysis working directories
            db_manager: Database holding result blobs
        """
        self.uploads_path = Path(uploads_path)
        self.analyses_path = Path(analyses_path)
        self.db = db_manager

    def _upload_dir(self, upload_id: str) -> Path:
        return self.uploads_path / sanitize_filename(upload_id)

    def _analysis_dir(self, analysis_id: str) -> Path:
        return self.analyses_path / sanitize_filename(analysis_id)

    async def save_file(self, file_name: str, data: bytes, upload_id: Optional[str] = None) -> str:
        """
        Store an evidence file.

        Args:
            file_name: Original file name
            data: File content
            upload_id: Existing upload to add to; a new id is generated if None

        Returns:
            The upload id
        """
        upload_id = upload_id or generate_uuid()
        upload_dir = self._upload_dir(upload_id)
        await aiofiles.os.makedirs(upload_dir, exist_ok=True)

        file_path = upload_dir / sanitize_filename(file_name)
        async with aiofiles.open(file_path, "wb") as f:
            await f.write(data)

        logger.info(f"Stored {file_path.name} ({format_bytes(len(data))}) for upload {upload_id}")
        return upload_id

    async def list_files(self, upload_id: str) -> List[str]:
        upload_dir = self._upload_dir(upload_id)
        if not await aiofiles.os.path.isdir(upload_dir):
            return []

        names = []
        for name in sorted(await aiofiles.os.listdir(upload_dir)):
            if await aiofiles.os.path.isfile(upload_dir / name):
                names.append(name)
        return names

    async def open_file(self, upload_id: str, file_name: str) -> bytes:
        """
        Read an evidence file.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        file_path = self._upload_dir(upload_id) / sanitize_filename(file_name)
        async with aiofiles.open(file_path, "rb") as f:
            return await f.read()

    async def save_result(self, analysis_id: str, result_type: str, data: Any):
        async with self.db.get_session() as session:
            await ResultStore(session).save(analysis_id, result_type, data)

        # Working copy next to the database row
        analysis_dir = self._analysis_dir(analysis_id)
        await aiofiles.os.makedirs(analysis_dir, exist_ok=True)
        async with aiofiles.open(analysis_dir / f"{sanitize_filename(result_type)}.json", "w", encoding="utf-8") as f:
            await f.write(json.dumps(data))

    async def get_result(self, analysis_id: str, result_type: str) -> Optional[Any]:
        async with self.db.get_session() as session:
            return await ResultStore(session).get(analysis_id, result_type)

    async def delete_result(self, analysis_id: str, result_type: str) -> bool:
        async with self.db.get_session() as session:
            removed = await ResultStore(session).delete(analysis_id, result_type)

        result_file = self._analysis_dir(analysis_id) / f"{sanitize_filename(result_type)}.json"
        if await aiofiles.os.path.isfile(result_file):
            await aiofiles.os.remove(result_file)
        return removed > 0

    async def delete_analysis_directory(self, analysis_id: str) -> bool:
        """
        Remove an analysis's working directory and all of its results.

        Returns:
            True if anything was removed
        """
        async with self.db.get_session() as session:
            removed = await ResultStore(session).delete(analysis_id)

        analysis_dir = self._analysis_dir(analysis_id)
        existed = await aiofiles.os.path.isdir(analysis_dir)
        if existed:
            await asyncio.to_thread(shutil.rmtree, analysis_dir)
            logger.info(f"Deleted working directory of analysis {analysis_id}")

        return existed or removed > 0
