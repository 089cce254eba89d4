"""Shared base model for Cosmos DB documents."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_serializer


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as fixed-width ISO 8601 so stored values sort lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def serialize_timestamp(value: datetime | None) -> str | None:
    return format_timestamp(value) if value is not None else None


class DocumentBase(BaseModel):
    """Fields common to every stored document.

    Subclasses route their own timestamp fields through
    ``serialize_timestamp`` so every stored time compares as a string.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @field_serializer("created_at", "updated_at", "deleted_at")
    def _serialize_timestamps(self, value: datetime | None) -> str | None:
        return serialize_timestamp(value)
