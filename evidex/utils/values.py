"""
Evidex Field Values

Closed value type shared by event field maps and rule metadata.

Strings, numbers and booleans keep their own JSON type. Timestamps are
written as {"type": "timestamp", "value": "<ISO 8601>"} so they load
back as datetimes instead of strings.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, Mapping, Union

from pydantic import BeforeValidator, PlainSerializer

TIMESTAMP_TAG = "timestamp"

FIELD_VALUE_TYPES = (bool, int, float, str, datetime)


def to_json_value(value: Any) -> Any:
    """Convert a field value to its JSON form."""
    if isinstance(value, datetime):
        return {"type": TIMESTAMP_TAG, "value": value.isoformat()}
    return value


def from_json_value(value: Any) -> Any:
    """
    Decode the JSON form of a field value.

    Raises:
        ValueError: If a tagged object is not a timestamp
    """
    if isinstance(value, dict):
        if value.get("type") != TIMESTAMP_TAG or not isinstance(value.get("value"), str):
            raise ValueError(f"Unsupported tagged field value: {value!r}")
        return datetime.fromisoformat(value["value"].replace("Z", "+00:00"))
    return value


# bool before int so pydantic keeps JSON booleans as booleans
FieldValue = Annotated[
    Union[bool, int, float, str, datetime],
    BeforeValidator(from_json_value),
    PlainSerializer(to_json_value, return_type=Any, when_used="json"),
]


def check_field_map(values: Mapping[str, Any], owner: str = "field map") -> Dict[str, Any]:
    """
    Validate that every value of a mapping is a field value.

    Args:
        values: Mapping to validate
        owner: Name used in the error message

    Returns:
        A plain dict copy preserving key order

    Raises:
        TypeError: If a key is not a string or a value has an unsupported type
    """
    checked: Dict[str, Any] = {}
    for key, value in values.items():
        if not isinstance(key, str):
            raise TypeError(f"{owner} keys must be strings, got {type(key).__name__}")
        if not isinstance(value, FIELD_VALUE_TYPES):
            raise TypeError(
                f"{owner} value for '{key}' must be str, int, float, bool or datetime, "
                f"got {type(value).__name__}"
            )
        checked[key] = value
    return checked
