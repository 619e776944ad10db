"""
Base Domain Models

Shared base class for tenant-owned documents.
"""

from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from rxcare.validators import new_object_id


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Datetime field that is always timezone-aware UTC after validation
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class BaseEntity(BaseModel):
    """Base class for all tenant-owned documents."""

    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        use_enum_values=False,
    )

    id: str = Field(default_factory=new_object_id, description="Document ID")
    tenant_id: str = Field(..., min_length=1, description="Workplace (tenant) isolation ID")
    is_deleted: bool = Field(default=False, description="Soft-delete flag")
    created_by: str | None = Field(default=None, description="Creating user")
    updated_by: str | None = Field(default=None, description="Last updating user")
    created_at: UtcDatetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: UtcDatetime = Field(default_factory=utcnow, description="Last update timestamp")
    version: int = Field(default=0, ge=0, description="Optimistic concurrency token")
