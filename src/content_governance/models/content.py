"""Content item and content version document models."""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from content_governance.models.base import DocumentBase, serialize_timestamp, utcnow
from content_governance.models.branch import ActorType, Visibility


class ContentType(StrEnum):
    GUIDELINE = "guideline"
    ASSET = "asset"
    OPINION = "opinion"


def compute_checksum(body: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded body."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def compute_byte_size(body: str) -> int:
    return len(body.encode("utf-8"))


class MetadataSnapshot(BaseModel):
    """Descriptive fields frozen at the moment a version was written."""

    model_config = ConfigDict(frozen=True)

    title: str
    category: str | None = None
    tags: tuple[str, ...] = ()


class ContentItem(DocumentBase):
    """A piece of content living inside a branch (``contents`` container, ``/branch_id``)."""

    doc_type: Literal["content"] = "content"
    branch_id: str
    slug: str
    title: str
    content_type: ContentType = ContentType.GUIDELINE
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    description: str | None = None
    current_version_id: str | None = None
    published_version_id: str | None = None
    source_content_id: str | None = None
    source_branch_id: str | None = None
    base_version_id: str | None = None
    visibility: Visibility = Visibility.PRIVATE
    is_published: bool = False
    published_at: datetime | None = None
    published_by: str | None = None
    created_by: str = ""

    @field_serializer("published_at")
    def _serialize_published_at(self, value: datetime | None) -> str | None:
        return serialize_timestamp(value)

    def snapshot(self) -> MetadataSnapshot:
        return MetadataSnapshot(
            title=self.title, category=self.category, tags=tuple(self.tags)
        )


class SlugReservation(DocumentBase):
    """Claims a slug inside a branch partition.

    The id is derived from the slug, so a second create for the same slug in the
    same branch fails with a conflict. Reservations are never deleted; a
    soft-deleted item keeps its slug.
    """

    doc_type: Literal["slug"] = "slug"
    branch_id: str
    slug: str
    content_id: str

    @classmethod
    def for_item(cls, item: ContentItem) -> SlugReservation:
        return cls(
            id=f"slug:{item.slug}",
            branch_id=item.branch_id,
            slug=item.slug,
            content_id=item.id,
        )


class ContentVersion(DocumentBase):
    """One immutable link in a content item's version chain."""

    doc_type: Literal["version"] = "version"
    content_id: str
    branch_id: str
    parent_version_id: str | None = None
    body: str
    body_format: str = "markdown"
    metadata_snapshot: MetadataSnapshot
    checksum: str
    byte_size: int
    change_description: str = ""
    author_id: str
    author_type: ActorType = ActorType.USER
    is_revert: bool = False
    reverted_from_id: str | None = None
    version_timestamp: datetime = Field(default_factory=utcnow)

    @field_serializer("version_timestamp")
    def _serialize_version_timestamp(self, value: datetime) -> str | None:
        return serialize_timestamp(value)

    @classmethod
    def for_body(cls, body: str, **fields: object) -> ContentVersion:
        """Build a version with checksum and byte size derived from ``body``."""
        return cls(
            body=body,
            checksum=compute_checksum(body),
            byte_size=compute_byte_size(body),
            **fields,
        )

    def verify(self) -> bool:
        return self.checksum == compute_checksum(self.body) and self.byte_size == (
            compute_byte_size(self.body)
        )


class ContentChange(StrEnum):
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class ContentConflict(BaseModel):
    """An item edited on both the branch and the target since the branch forked it."""

    content_id: str
    slug: str
    title: str
    description: str
    conflicting_ranges: list[tuple[int, int]] = Field(default_factory=list)


class ContentMergeResult(BaseModel):
    """Per-slug outcome of carrying a branch's content into its target."""

    success: bool
    changes: dict[str, ContentChange] = Field(default_factory=dict)
    conflicts: list[ContentConflict] = Field(default_factory=list)
