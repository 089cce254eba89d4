"""Convergence operation and target-lock document models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field, field_serializer

from content_governance.models.base import DocumentBase, serialize_timestamp


class ConvergenceStatus(StrEnum):
    PENDING = "pending"
    VALIDATING = "validating"
    MERGING = "merging"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


ACTIVE_STATUSES = frozenset({ConvergenceStatus.VALIDATING, ConvergenceStatus.MERGING})
TERMINAL_STATUSES = frozenset(
    {
        ConvergenceStatus.SUCCEEDED,
        ConvergenceStatus.FAILED,
        ConvergenceStatus.ROLLED_BACK,
    }
)

# Forward-only edges; terminal statuses have none.
_NEXT_STATUSES: dict[ConvergenceStatus, frozenset[ConvergenceStatus]] = {
    ConvergenceStatus.PENDING: frozenset(
        {ConvergenceStatus.VALIDATING, ConvergenceStatus.FAILED}
    ),
    ConvergenceStatus.VALIDATING: frozenset(
        {ConvergenceStatus.MERGING, ConvergenceStatus.FAILED}
    ),
    ConvergenceStatus.MERGING: TERMINAL_STATUSES,
}


class ConflictType(StrEnum):
    CONTENT = "content"
    RENAME = "rename"
    DELETE = "delete"


class ValidationResult(BaseModel):
    check: str
    passed: bool
    message: str


class ConflictDetail(BaseModel):
    path: str
    type: ConflictType
    description: str


class ConvergenceOperation(DocumentBase):
    """A request to merge one approved branch into its target ref.

    Partitioned by ``/target_ref`` so the operation and the target's lock
    document can be written in one transactional batch.
    """

    doc_type: Literal["operation"] = "operation"
    branch_id: str
    publisher_id: str
    target_ref: str
    status: ConvergenceStatus = ConvergenceStatus.PENDING
    validation_results: list[ValidationResult] = Field(default_factory=list)
    conflict_detected: bool = False
    conflict_details: list[ConflictDetail] = Field(default_factory=list)
    merge_commit: str | None = None
    pre_merge_commit: str | None = None
    failure_reason: str | None = None
    blocked_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_serializer("started_at", "completed_at")
    def _serialize_run_timestamps(self, value: datetime | None) -> str | None:
        return serialize_timestamp(value)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, status: ConvergenceStatus) -> bool:
        return status in _NEXT_STATUSES.get(self.status, frozenset())

    def queued_before(self, other: ConvergenceOperation) -> bool:
        """Return True when this operation wins the first-wins race against ``other``."""
        return (self.created_at, self.id) < (other.created_at, other.id)


TARGET_LOCK_ID = "target-lock"


class TargetLock(DocumentBase):
    """Marker document: exists only while an operation holds the target ref.

    Its id is fixed within the target's partition, so a second create fails
    with a conflict and enforces one active operation per target.
    """

    id: str = TARGET_LOCK_ID
    doc_type: Literal["lock"] = "lock"
    target_ref: str
    holder_id: str
    branch_id: str
    acquired_at: datetime

    @field_serializer("acquired_at")
    def _serialize_acquired_at(self, value: datetime) -> str | None:
        return serialize_timestamp(value)


class LockResult(BaseModel):
    acquired: bool
    lock_id: str | None = None
    reason: str | None = None
    blocked_by: str | None = None
