"""Branch and branch-transition document models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, field_serializer

from content_governance.models.base import DocumentBase, serialize_timestamp


class BranchState(StrEnum):
    DRAFT = "draft"
    REVIEW = "review"
    APPROVED = "approved"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class TransitionEvent(StrEnum):
    SUBMIT_FOR_REVIEW = "SUBMIT_FOR_REVIEW"
    REQUEST_CHANGES = "REQUEST_CHANGES"
    APPROVE = "APPROVE"
    PUBLISH = "PUBLISH"
    ARCHIVE = "ARCHIVE"


class Visibility(StrEnum):
    PRIVATE = "private"
    TEAM = "team"
    PUBLIC = "public"


class ActorType(StrEnum):
    USER = "user"
    SYSTEM = "system"


class Role(StrEnum):
    CONTRIBUTOR = "contributor"
    REVIEWER = "reviewer"
    PUBLISHER = "publisher"
    ADMINISTRATOR = "administrator"


class Actor(BaseModel):
    """The authenticated caller, as resolved by the outer auth layer."""

    id: str
    roles: list[Role] = Field(default_factory=list)
    actor_type: ActorType = ActorType.USER

    def has_role(self, *roles: Role) -> bool:
        return any(role in self.roles for role in roles)


class Branch(DocumentBase):
    """An isolated workspace of content changes with its own lifecycle state.

    Stored in the ``branches`` container, partitioned by ``/branch_id`` so the
    branch and its transition records can be written in one batch.
    """

    doc_type: Literal["branch"] = "branch"
    name: str
    slug: str
    owner_id: str
    base_ref: str = "main"
    base_commit: str | None = None
    head_commit: str | None = None
    git_ref: str = ""
    state: BranchState = BranchState.DRAFT
    visibility: Visibility = Visibility.PRIVATE
    reviewers: list[str] = Field(default_factory=list)
    collaborators: list[str] = Field(default_factory=list)
    open_review_requests: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    description: str | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    published_at: datetime | None = None
    archived_at: datetime | None = None

    @field_serializer("submitted_at", "approved_at", "published_at", "archived_at")
    def _serialize_lifecycle_timestamps(self, value: datetime | None) -> str | None:
        return serialize_timestamp(value)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def branch_id(self) -> str:
        return self.id

    @property
    def has_changes(self) -> bool:
        return self.head_commit != self.base_commit


class BranchTransition(DocumentBase):
    """Immutable audit record written on every successful state change."""

    doc_type: Literal["transition"] = "transition"
    branch_id: str
    from_state: BranchState
    to_state: BranchState
    event: TransitionEvent
    actor_id: str
    actor_type: ActorType = ActorType.USER
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
