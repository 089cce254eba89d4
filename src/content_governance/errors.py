"""Domain error types raised by the governance services.

Every error carries the structured fields a caller needs to react without
parsing messages: the failing guard name, the blocking operation id, the full
conflict list, or whether an automatic rollback succeeded.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from content_governance.models.convergence import ConflictDetail


class ContentGovernanceError(Exception):
    """Base class for all domain errors."""


class NotFoundError(ContentGovernanceError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class AuthorizationError(ContentGovernanceError):
    """Raised when a role or ownership guard rejects the actor."""

    def __init__(self, guard: str, message: str) -> None:
        self.guard = guard
        super().__init__(message)


class StateError(ContentGovernanceError):
    """Raised when an entity is not in the state an operation requires."""

    def __init__(self, guard: str, message: str) -> None:
        self.guard = guard
        super().__init__(message)


class LockContentionError(ContentGovernanceError):
    """Raised when a target ref is busy or an earlier request is queued ahead.

    Attributes:
        reason: ``"target busy"`` or ``"queued behind earlier request"``.
        blocked_by: Id of the operation holding or ahead in the queue.
        operation_id: Id of the operation that failed to acquire the lock.
    """

    def __init__(
        self, reason: str, blocked_by: str | None, *, operation_id: str | None = None
    ) -> None:
        self.reason = reason
        self.blocked_by = blocked_by
        self.operation_id = operation_id
        super().__init__(f"{reason} (blocked by {blocked_by})")


class ConflictError(ContentGovernanceError):
    """Raised when a branch and its target modified the same paths."""

    def __init__(
        self, conflicts: list[ConflictDetail], *, operation_id: str | None = None
    ) -> None:
        self.conflicts = list(conflicts)
        self.operation_id = operation_id
        paths = ", ".join(c.path for c in self.conflicts)
        super().__init__(f"{len(self.conflicts)} conflict(s) detected: {paths}")


class MergeFailureError(ContentGovernanceError):
    """Raised when the merge failed; ``rolled_back`` tells whether the target was restored."""

    def __init__(
        self, message: str, *, rolled_back: bool, operation_id: str | None = None
    ) -> None:
        self.rolled_back = rolled_back
        self.operation_id = operation_id
        super().__init__(message)


class StaleVersionError(ContentGovernanceError):
    """Raised when a content item moved on since the caller last read it."""

    def __init__(
        self, content_id: str, expected: str | None, actual: str | None
    ) -> None:
        self.content_id = content_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Content {content_id} was modified concurrently "
            f"(expected head {expected}, found {actual})"
        )


class ContentLimitError(ContentGovernanceError):
    """Raised when a body or diff input exceeds the configured ceiling."""

    def __init__(self, what: str, limit: int, actual: int) -> None:
        self.limit = limit
        self.actual = actual
        super().__init__(f"{what} exceeds limit: {actual} > {limit}")


class VersionControlError(ContentGovernanceError):
    """Raised when the version-control primitive rejects or fails a command."""

    def __init__(
        self, message: str, *, command: tuple[str, ...] = (), stderr: str = ""
    ) -> None:
        self.command = command
        self.stderr = stderr
        super().__init__(message)
