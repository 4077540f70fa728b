"""
Evidex Utilities Package
"""

from .helpers import (
    ensure_utc,
    format_bytes,
    generate_uuid,
    get_current_timestamp,
    hash_bytes,
    parse_timestamp,
    sanitize_filename,
    truncate_string,
)

__all__ = [
    "ensure_utc",
    "format_bytes",
    "generate_uuid",
    "get_current_timestamp",
    "hash_bytes",
    "parse_timestamp",
    "sanitize_filename",
    "truncate_string",
]
