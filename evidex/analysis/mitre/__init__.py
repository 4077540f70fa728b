"""MITRE ATT&CK mapping."""

from .mapping import MitreMapper, TECHNIQUE_ID_PATTERN
from .reference import (
    ReferenceData,
    TacticInfo,
    TechniqueInfo,
    TACTIC_ORDER,
    embedded_reference_data,
    load_reference_data,
    parse_stix_bundle,
)

__all__ = [
    "MitreMapper",
    "TECHNIQUE_ID_PATTERN",
    "ReferenceData",
    "TacticInfo",
    "TechniqueInfo",
    "TACTIC_ORDER",
    "embedded_reference_data",
    "load_reference_data",
    "parse_stix_bundle",
]
