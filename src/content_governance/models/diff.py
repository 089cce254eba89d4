"""Value objects produced by the diff engine."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ChangeType(StrEnum):
    ADD = "add"
    REMOVE = "remove"
    UNCHANGED = "unchanged"


class DiffChange(BaseModel):
    """A contiguous range of lines sharing one change type.

    ``add`` and ``unchanged`` ranges are numbered in the new text, ``remove``
    ranges in the old text (1-based, inclusive).
    """

    type: ChangeType
    line_start: int
    line_end: int
    content: str

    @property
    def line_count(self) -> int:
        return self.line_end - self.line_start + 1


class MetadataChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class DiffSummary(BaseModel):
    additions: int
    deletions: int
    modifications: int


class ContentDiff(BaseModel):
    content_id: str
    from_version_id: str
    to_version_id: str
    body_changes: list[DiffChange]
    metadata_changes: list[MetadataChange]
    summary: DiffSummary


class MergedBody(BaseModel):
    """Outcome of a three-way body merge; ``body`` is None when the sides conflict."""

    body: str | None = None
    conflicting_ranges: list[tuple[int, int]] = Field(default_factory=list)

    @property
    def has_conflict(self) -> bool:
        return self.body is None
