"""
Input Validators

Early checks run before any store access: identifier format, actor and
tenant presence, date parsing and pagination coercion.
"""

from datetime import date, datetime, timezone
from typing import Any
import uuid

from rxcare.errors import ValidationError


def new_object_id() -> str:
    """Generate a store identifier."""
    return str(uuid.uuid4())


def is_object_id(value: Any) -> bool:
    """Check whether a value is in the store's identifier format."""
    if not isinstance(value, str):
        return False
    try:
        return str(uuid.UUID(value)) == value.lower()
    except ValueError:
        return False


def validate_object_id(value: Any, field: str = "id") -> str:
    """Return the identifier or raise ValidationError naming the field."""
    if not is_object_id(value):
        raise ValidationError(f"Invalid {field} format", field=field)
    return value.lower()


def require_actor(user_id: Any, tenant_id: Any) -> tuple[str, str]:
    """Both the acting user and the tenant must be present."""
    if not user_id or not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("User identifier is required", field="user_id")
    if not tenant_id or not isinstance(tenant_id, str) or not tenant_id.strip():
        raise ValidationError("Workplace identifier is required", field="tenant_id")
    return user_id.strip(), tenant_id.strip()


def parse_datetime(value: Any, field: str = "date") -> datetime | None:
    """
    Parse a date-like input into an aware UTC datetime.

    Accepts datetimes, dates and ISO-8601 strings. None and empty strings
    pass through as None. Anything else raises ValidationError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid {field}: {value!r}", field=field) from None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValidationError(f"Invalid {field}: {value!r}", field=field)


def clamp_pagination(page: Any, limit: Any, default_limit: int = 20,
                     max_limit: int = 50) -> tuple[int, int]:
    """Coerce page to >= 1 and limit into [1, max_limit]."""
    try:
        page = int(page) if page is not None else 1
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit) if limit is not None else default_limit
    except (TypeError, ValueError):
        limit = default_limit
    return max(page, 1), min(max(limit, 1), max_limit)
