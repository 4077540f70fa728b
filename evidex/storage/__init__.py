"""
Evidex Storage Package

Evidence files and persisted analysis results.
"""

from .database import DatabaseManager
from .local_storage import LocalStorage
from .models import AnalysisResult, Base
from .result_store import ResultStore

__all__ = [
    "DatabaseManager",
    "LocalStorage",
    "AnalysisResult",
    "Base",
    "ResultStore",
]
