"""
Typed property values <-> raw text storage.

ProfileProperty.raw_value is text; every typed comparison (group rules,
uniqueness, change detection) goes through these two functions.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional

from core.exceptions import ValidationError

_TRUE = {"true", "t", "1", "yes", "y"}
_FALSE = {"false", "f", "0", "no", "n"}


def parse_date(value: Any) -> datetime:
    """ISO-8601 strings, epoch milliseconds, date and datetime objects -> aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"{value} is not a valid date")
    else:
        raise ValidationError(f"{value!r} is not a valid date")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValidationError(f"{value} is not a valid boolean")


def to_raw(property_type: str, value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        if property_type == "integer":
            if isinstance(value, bool):
                raise ValueError
            number = float(value)
            if not number.is_integer():
                raise ValueError
            return str(int(number))
        if property_type == "float":
            if isinstance(value, bool):
                raise ValueError
            return repr(float(value))
        if property_type == "boolean":
            return "true" if parse_boolean(value) else "false"
        if property_type == "date":
            return parse_date(value).isoformat()
        if property_type == "email":
            text = str(value).strip().lower()
            if "@" not in text:
                raise ValueError
            return text
    except (TypeError, ValueError):
        raise ValidationError(f"{value} is not a valid {property_type}")
    return str(value)


def from_raw(property_type: str, raw: Optional[str]) -> Any:
    if raw is None:
        return None
    if property_type == "integer":
        return int(raw)
    if property_type == "float":
        return float(raw)
    if property_type == "boolean":
        return raw == "true"
    if property_type == "date":
        return parse_date(raw)
    return raw
