"""Data models for Cosmos DB document types and value objects."""

from content_governance.models.branch import (
    Actor,
    ActorType,
    Branch,
    BranchState,
    BranchTransition,
    Role,
    TransitionEvent,
    Visibility,
)
from content_governance.models.content import (
    ContentChange,
    ContentConflict,
    ContentItem,
    ContentMergeResult,
    ContentType,
    ContentVersion,
    MetadataSnapshot,
    SlugReservation,
)
from content_governance.models.convergence import (
    ConflictDetail,
    ConflictType,
    ConvergenceOperation,
    ConvergenceStatus,
    LockResult,
    TargetLock,
    ValidationResult,
)
from content_governance.models.diff import (
    ChangeType,
    ContentDiff,
    DiffChange,
    MergedBody,
    MetadataChange,
)

__all__ = [
    "Actor",
    "ActorType",
    "Branch",
    "BranchState",
    "BranchTransition",
    "ChangeType",
    "ConflictDetail",
    "ConflictType",
    "ContentChange",
    "ContentConflict",
    "ContentDiff",
    "ContentItem",
    "ContentMergeResult",
    "ContentType",
    "ContentVersion",
    "ConvergenceOperation",
    "ConvergenceStatus",
    "DiffChange",
    "LockResult",
    "MergedBody",
    "MetadataChange",
    "MetadataSnapshot",
    "Role",
    "SlugReservation",
    "TargetLock",
    "TransitionEvent",
    "ValidationResult",
    "Visibility",
]
