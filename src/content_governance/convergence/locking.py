"""First-wins locking of target refs for convergence operations.

A target ref is held by at most one operation in ``validating`` or ``merging``.
The lock is the ``TargetLock`` document in the target's partition. It is
created in the same transactional batch that flips the operation from
``pending`` to ``validating`` and deleted in the batch that writes the terminal
status, so the store itself guarantees mutual exclusion across processes.

Ordering among pending requests comes from the acquisition query: an operation
only tries to claim the lock when no pending operation on the same target was
created before it (ties broken by id).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from content_governance.errors import NotFoundError, StateError
from content_governance.events.audit import publish_status
from content_governance.models.base import utcnow
from content_governance.models.convergence import (
    TERMINAL_STATUSES,
    ConvergenceStatus,
    LockResult,
)

if TYPE_CHECKING:
    from content_governance.database.repositories import ConvergenceRepository
    from content_governance.events import EventPublisher
    from content_governance.models.convergence import ConvergenceOperation, TargetLock

logger = logging.getLogger(__name__)

TARGET_BUSY = "target busy"
QUEUED_BEHIND = "queued behind earlier request"
FORCE_RELEASED = "force released by operator"


class LockingService:
    """Acquire, advance and release target-ref locks."""

    def __init__(self, repo: ConvergenceRepository, events: EventPublisher) -> None:
        self._repo = repo
        self._events = events

    async def _require(self, convergence_id: str) -> ConvergenceOperation:
        operation = await self._repo.find(convergence_id)
        if operation is None:
            raise NotFoundError("ConvergenceOperation", convergence_id)
        return operation

    async def acquire_lock(
        self, branch_id: str, target_ref: str, convergence_id: str
    ) -> LockResult:
        """Try to take ``target_ref`` for a pending operation.

        Returns ``acquired=False`` with ``blocked_by`` when another operation
        holds the target or an older pending operation is queued ahead.
        """
        operation = await self._require(convergence_id)
        if operation.branch_id != branch_id or operation.target_ref != target_ref:
            raise StateError(
                "operation_matches",
                f"Operation {convergence_id} does not converge {branch_id} into {target_ref}",
            )
        if operation.status != ConvergenceStatus.PENDING:
            raise StateError(
                "operation_pending",
                f"Cannot acquire a lock for an operation in '{operation.status}' status",
            )

        active = await self._repo.find_active(target_ref)
        if active is not None:
            logger.info(
                "Lock on %s refused for %s: held by %s", target_ref, convergence_id, active.id
            )
            return LockResult(acquired=False, reason=TARGET_BUSY, blocked_by=active.id)

        ahead = await self._repo.find_queued_ahead(operation)
        if ahead is not None:
            logger.info(
                "Lock on %s refused for %s: queued behind %s",
                target_ref,
                convergence_id,
                ahead.id,
            )
            return LockResult(acquired=False, reason=QUEUED_BEHIND, blocked_by=ahead.id)

        claimed = await self._repo.claim_lock(operation, utcnow())
        if claimed is None:
            # Lost the race: report whoever holds the target now.
            holder = await self._repo.get_lock(target_ref)
            if holder is None:
                current = await self._require(convergence_id)
                if current.status != ConvergenceStatus.PENDING:
                    raise StateError(
                        "operation_pending",
                        f"Operation {convergence_id} changed to '{current.status}' "
                        "while acquiring the lock",
                    )
            blocked_by = holder.holder_id if holder else None
            logger.info(
                "Lock on %s lost by %s to %s", target_ref, convergence_id, blocked_by
            )
            return LockResult(acquired=False, reason=TARGET_BUSY, blocked_by=blocked_by)

        logger.info("Lock on %s acquired by %s", target_ref, convergence_id)
        await publish_status(self._events, claimed, ConvergenceStatus.PENDING)
        return LockResult(acquired=True, lock_id=claimed.id)

    async def transition_to_merging(
        self, convergence_id: str, **changes: Any
    ) -> ConvergenceOperation:
        """Move a lock holder from validating to merging."""
        operation = await self._require(convergence_id)
        if operation.status != ConvergenceStatus.VALIDATING:
            raise StateError(
                "operation_validating",
                f"Cannot start merging an operation in '{operation.status}' status",
            )
        merging = await self._repo.advance(operation, ConvergenceStatus.MERGING, **changes)
        if merging is None:
            raise StateError(
                "operation_validating",
                f"Operation {convergence_id} changed while entering the merge phase",
            )
        await publish_status(self._events, merging, ConvergenceStatus.VALIDATING)
        return merging

    async def release_lock(
        self, convergence_id: str, outcome: ConvergenceStatus, **changes: Any
    ) -> ConvergenceOperation:
        """Write a terminal outcome, stamp ``completed_at`` and drop the lock."""
        if outcome not in TERMINAL_STATUSES:
            raise ValueError(f"Lock release requires a terminal outcome, got {outcome!r}")
        operation = await self._require(convergence_id)
        previous = operation.status
        if not operation.can_transition_to(outcome):
            raise StateError(
                "operation_releasable",
                f"Cannot move an operation from '{previous}' to '{outcome}'",
            )
        released = await self._repo.release(operation, outcome, utcnow(), **changes)
        if released is None:
            raise StateError(
                "operation_releasable",
                f"Operation {convergence_id} changed while releasing its lock",
            )
        logger.info(
            "Lock on %s released by %s: %s", released.target_ref, convergence_id, outcome
        )
        await publish_status(self._events, released, previous)
        return released

    async def force_release_lock(self, convergence_id: str) -> ConvergenceOperation:
        """Operator escape hatch: fail an active operation and free its target.

        Must be followed by reconciliation of the target ref, since the
        operation may have died after the merge commit was written.
        """
        operation = await self._require(convergence_id)
        if not operation.is_active:
            raise StateError(
                "operation_active",
                f"Only validating or merging operations can be force released "
                f"(operation is '{operation.status}')",
            )
        logger.warning(
            "Force releasing lock on %s held by %s (%s)",
            operation.target_ref,
            convergence_id,
            operation.status,
        )
        return await self.release_lock(
            convergence_id,
            ConvergenceStatus.FAILED,
            failure_reason=FORCE_RELEASED,
        )

    async def has_lock(self, convergence_id: str) -> bool:
        operation = await self._repo.find(convergence_id)
        if operation is None or not operation.is_active:
            return False
        lock = await self._repo.get_lock(operation.target_ref)
        return lock is not None and lock.holder_id == convergence_id

    async def get_lock_holder(self, target_ref: str) -> str | None:
        lock = await self._repo.get_lock(target_ref)
        return lock.holder_id if lock else None

    async def list_stale_locks(self, older_than: timedelta) -> list[TargetLock]:
        """Locks held longer than ``older_than``; reported only, never released."""
        cutoff = utcnow() - older_than
        stale = [lock for lock in await self._repo.list_locks() if lock.acquired_at < cutoff]
        for lock in stale:
            logger.warning(
                "Lock on %s held by %s since %s",
                lock.target_ref,
                lock.holder_id,
                lock.acquired_at.isoformat(),
            )
        return stale
