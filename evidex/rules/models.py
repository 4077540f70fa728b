"""
Evidex Rule Match Models

Results produced by a rule engine for one analysis.
"""

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..utils.values import FieldValue

logger = logging.getLogger(__name__)

SEVERITY_LEVELS = ("critical", "high", "medium", "low")

# Technique (T1059) or sub-technique (T1059.001)
TECHNIQUE_ID_FORMAT = re.compile(r"T\d{4}(?:\.\d{3})?")


class MatchDetail(BaseModel):
    """One occurrence of a rule match inside the evidence."""
    matched_content: str = ""
    file_offset: Optional[int] = None
    line_number: Optional[int] = None
    context: str = ""
    fields: Dict[str, FieldValue] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class RuleMatchResult(BaseModel):
    """
    Aggregated matches of a single rule.

    The engine emits one result per rule that matched at least once.
    """
    rule_id: str
    rule_name: str
    rule_type: str = "pattern"
    severity: str = "medium"  # critical, high, medium, low
    match_count: int = Field(default=1, ge=1)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    matches: List[MatchDetail] = Field(default_factory=list)
    mitre_attack_ids: List[str] = Field(default_factory=list)
    metadata: Dict[str, FieldValue] = Field(default_factory=dict)

    @field_validator("severity")
    @classmethod
    def _normalize_severity(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("mitre_attack_ids")
    @classmethod
    def _normalize_technique_ids(cls, value: List[str]) -> List[str]:
        normalized = []
        for technique_id in value:
            technique_id = technique_id.strip().upper() if technique_id else ""
            if not technique_id:
                continue
            if not TECHNIQUE_ID_FORMAT.fullmatch(technique_id):
                logger.warning(f"Dropping malformed technique id: {technique_id!r}")
                continue
            normalized.append(technique_id)
        return normalized
