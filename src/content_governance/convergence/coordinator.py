"""Orchestrates a convergence: lock, validate, detect conflicts, merge, release.

``execute`` always leaves its operation terminal with the target lock released,
with one exception: when a merge fails and the rollback fails too, the
operation stays in ``merging`` and keeps the lock. The target ref then needs an
operator (``force_release`` followed by reconciliation).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from content_governance.convergence.merge import MergeContext, convergence_message
from content_governance.errors import (
    AuthorizationError,
    ConflictError,
    ContentGovernanceError,
    LockContentionError,
    MergeFailureError,
    NotFoundError,
    StateError,
    VersionControlError,
)
from content_governance.events.audit import publish_status
from content_governance.models.branch import BranchState, Role, TransitionEvent
from content_governance.models.convergence import (
    ConflictDetail,
    ConflictType,
    ConvergenceOperation,
    ConvergenceStatus,
    ValidationResult,
)

if TYPE_CHECKING:
    from content_governance.content.versions import ContentVersionStore
    from content_governance.convergence.conflicts import ConflictDetectionService
    from content_governance.convergence.locking import LockingService
    from content_governance.convergence.merge import MergeExecutor
    from content_governance.database.repositories import ConvergenceRepository
    from content_governance.events import EventPublisher
    from content_governance.models.branch import Actor, Branch
    from content_governance.models.content import ContentConflict
    from content_governance.vcs import VersionControl
    from content_governance.workflow.branches import BranchService
    from content_governance.workflow.transitions import TransitionService

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


class ValidationReport(BaseModel):
    is_valid: bool
    results: list[ValidationResult] = Field(default_factory=list)
    conflicts: list[ConflictDetail] = Field(default_factory=list)


class ReconciliationReport(BaseModel):
    """What actually happened to a target ref after an operation was abandoned."""

    operation_id: str
    target_ref: str
    status: ConvergenceStatus
    pre_merge_commit: str | None = None
    target_head: str | None = None
    merge_commit: str | None = None
    merge_written: bool
    detail: str


def _content_details(conflicts: list[ContentConflict]) -> list[ConflictDetail]:
    return [
        ConflictDetail(path=c.slug, type=ConflictType.CONTENT, description=c.description)
        for c in conflicts
    ]


class ConvergenceCoordinator:
    """Public entry points for converging approved branches into their base ref."""

    def __init__(
        self,
        repo: ConvergenceRepository,
        branches: BranchService,
        transitions: TransitionService,
        locking: LockingService,
        conflicts: ConflictDetectionService,
        merger: MergeExecutor,
        store: ContentVersionStore,
        vcs: VersionControl,
        events: EventPublisher,
    ) -> None:
        self._repo = repo
        self._branches = branches
        self._transitions = transitions
        self._locking = locking
        self._conflicts = conflicts
        self._merger = merger
        self._store = store
        self._vcs = vcs
        self._events = events

    @staticmethod
    def _require_publisher(actor: Actor) -> None:
        if not actor.has_role(Role.PUBLISHER, Role.ADMINISTRATOR):
            raise AuthorizationError(
                "has_publisher_role",
                "Only publishers or administrators can converge branches",
            )

    async def get_status(self, operation_id: str) -> ConvergenceOperation:
        operation = await self._repo.find(operation_id)
        if operation is None:
            raise NotFoundError("ConvergenceOperation", operation_id)
        return operation

    async def list_for_branch(self, branch_id: str) -> list[ConvergenceOperation]:
        return await self._repo.list_by_branch(branch_id)

    async def create(self, branch_id: str, actor: Actor) -> ConvergenceOperation:
        """Record a pending request to converge an approved branch into its base ref."""
        self._require_publisher(actor)
        branch = await self._branches.get_branch(branch_id)
        if branch.state != BranchState.APPROVED:
            raise StateError(
                "branch_approved",
                f"Branch must be in 'approved' state to converge (is '{branch.state}')",
            )
        latest = await self._repo.get_latest_for_branch(branch_id)
        if latest is not None and not latest.is_terminal:
            raise StateError(
                "no_convergence_in_progress",
                f"Convergence {latest.id} is already {latest.status} for this branch",
            )

        operation = ConvergenceOperation(
            branch_id=branch.id,
            publisher_id=actor.id,
            target_ref=branch.base_ref,
        )
        await self._repo.create(operation)
        logger.info(
            "Created convergence %s for branch %s into %s",
            operation.id,
            branch.id,
            operation.target_ref,
        )
        await publish_status(self._events, operation, None)
        return operation

    @staticmethod
    def _preconditions(branch: Branch, head_commit: str | None) -> list[ValidationResult]:
        approved = branch.state == BranchState.APPROVED
        open_requests = len(branch.open_review_requests)
        has_changes = head_commit is not None and head_commit != branch.base_commit
        if head_commit is None:
            changes_message = "Branch head could not be read"
        elif has_changes:
            changes_message = "Branch has changes to merge"
        else:
            changes_message = "Branch has no changes to merge"
        return [
            ValidationResult(
                check="branch_approved",
                passed=approved,
                message="Branch is approved"
                if approved
                else f"Branch is in '{branch.state}' state, must be 'approved'",
            ),
            ValidationResult(
                check="no_open_review_requests",
                passed=open_requests == 0,
                message="No unresolved review requests"
                if open_requests == 0
                else f"{open_requests} review request(s) are still unresolved",
            ),
            ValidationResult(
                check="has_changes",
                passed=has_changes,
                message=changes_message,
            ),
        ]

    async def validate(self, branch_id: str) -> ValidationReport:
        """Dry run of the convergence checks; takes no lock and writes nothing."""
        branch = await self._branches.get_branch(branch_id)
        head: str | None
        try:
            head = await self._vcs.get_head_commit(branch.git_ref)
        except VersionControlError as exc:
            logger.warning("Could not read head of %s: %s", branch.git_ref, exc)
            head = None
        results = self._preconditions(branch, head)
        conflicts: list[ConflictDetail] = []

        try:
            check = await self._conflicts.check_conflicts(branch.git_ref, branch.base_ref)
        except VersionControlError as exc:
            results.append(
                ValidationResult(
                    check="no_conflicts",
                    passed=False,
                    message=f"Conflict detection failed: {exc}",
                )
            )
        else:
            conflicts.extend(check.conflicts)
            results.append(
                ValidationResult(
                    check="no_conflicts",
                    passed=not check.has_conflicts,
                    message=f"{len(check.conflicts)} conflict(s) detected"
                    if check.has_conflicts
                    else "No conflicts detected",
                )
            )

        content_conflicts = await self._store.detect_content_conflicts(
            branch.id, branch.base_ref
        )
        conflicts.extend(_content_details(content_conflicts))
        results.append(
            ValidationResult(
                check="no_content_conflicts",
                passed=not content_conflicts,
                message=f"{len(content_conflicts)} content conflict(s) detected"
                if content_conflicts
                else "No content conflicts detected",
            )
        )

        mergeability = await self._merger.dry_run_merge(branch.git_ref, branch.base_ref)
        known = {c.path for c in conflicts}
        conflicts.extend(c for c in mergeability.conflicts if c.path not in known)
        results.append(
            ValidationResult(
                check="mergeable",
                passed=mergeability.can_merge,
                message="Branch merges cleanly"
                if mergeability.can_merge
                else "Branch does not merge cleanly",
            )
        )
        return ValidationReport(
            is_valid=all(r.passed for r in results), results=results, conflicts=conflicts
        )

    async def execute(self, operation_id: str, actor: Actor) -> ConvergenceOperation:
        """Run a pending operation to a terminal outcome.

        Raises:
            LockContentionError: The target is busy or an older request is queued.
            StateError: A precondition failed; ``guard`` names the check.
            ConflictError: The branch and target changed the same paths or
                the same content items.
            MergeFailureError: The merge failed; ``rolled_back`` tells whether
                the target ref was restored.
        """
        self._require_publisher(actor)
        operation = await self.get_status(operation_id)
        if operation.status != ConvergenceStatus.PENDING:
            raise StateError(
                "operation_pending",
                f"Cannot execute a convergence in '{operation.status}' status",
            )

        lock = await self._locking.acquire_lock(
            operation.branch_id, operation.target_ref, operation.id
        )
        if not lock.acquired:
            reason = lock.reason or "lock not acquired"
            await self._locking.release_lock(
                operation.id,
                ConvergenceStatus.FAILED,
                failure_reason=reason,
                blocked_by=lock.blocked_by,
            )
            raise LockContentionError(reason, lock.blocked_by, operation_id=operation.id)

        try:
            operation = await self._run_locked(operation.id, actor)
        except (StateError, ConflictError, MergeFailureError):
            raise
        except Exception as exc:
            if await self._locking.has_lock(operation_id):
                logger.exception("Convergence %s aborted", operation_id)
                await self._locking.release_lock(
                    operation_id,
                    ConvergenceStatus.FAILED,
                    failure_reason=str(exc) or type(exc).__name__,
                )
            raise

        try:
            await self._publish_branch(operation, actor)
        except ContentGovernanceError:
            # The merge is already on the target, so the outcome stays succeeded.
            logger.exception(
                "Convergence %s succeeded but publishing branch %s failed",
                operation.id,
                operation.branch_id,
            )
        return operation

    async def _fail(
        self, operation_id: str, reason: str, **changes: object
    ) -> ConvergenceOperation:
        return await self._locking.release_lock(
            operation_id, ConvergenceStatus.FAILED, failure_reason=reason, **changes
        )

    async def _run_locked(
        self, operation_id: str, actor: Actor
    ) -> ConvergenceOperation:
        operation = await self.get_status(operation_id)
        branch = await self._branches.get_branch(operation.branch_id)
        branch = await self._branches.refresh_head(branch)

        results = self._preconditions(branch, branch.head_commit or "")
        operation.validation_results = results
        saved = await self._repo.save_details(operation)
        if saved is None:
            raise StateError(
                "operation_validating", f"Operation {operation_id} changed during validation"
            )
        failed = next((r for r in results if not r.passed), None)
        if failed is not None:
            await self._fail(operation_id, failed.message)
            raise StateError(failed.check, failed.message)

        check = await self._conflicts.check_conflicts(branch.git_ref, operation.target_ref)
        if check.has_conflicts:
            await self._fail(
                operation_id,
                f"{len(check.conflicts)} conflict(s) detected",
                conflict_detected=True,
                conflict_details=check.conflicts,
            )
            raise ConflictError(check.conflicts, operation_id=operation_id)

        content_conflicts = await self._store.detect_content_conflicts(
            branch.id, operation.target_ref
        )
        if content_conflicts:
            details = _content_details(content_conflicts)
            await self._fail(
                operation_id,
                f"{len(details)} content conflict(s) detected",
                conflict_detected=True,
                conflict_details=details,
            )
            raise ConflictError(details, operation_id=operation_id)

        pre_merge_commit = await self._vcs.get_head_commit(operation.target_ref)
        await self._locking.transition_to_merging(
            operation_id, pre_merge_commit=pre_merge_commit
        )
        result = await self._merger.atomic_merge(
            MergeContext(
                branch_ref=branch.git_ref,
                target_ref=operation.target_ref,
                branch_id=branch.id,
                publisher_id=actor.id,
                message=convergence_message(branch),
            )
        )

        if result.success:
            # Target content is only written while the target lock is held.
            merged = await self._store.merge_into_target(
                branch.id, operation.target_ref, actor
            )
            if not merged.success:
                details = _content_details(merged.conflicts)
                await self._fail(
                    operation_id,
                    f"{len(details)} content conflict(s) detected after merge",
                    conflict_detected=True,
                    conflict_details=details,
                    merge_commit=result.merge_commit,
                    pre_merge_commit=result.pre_merge_commit,
                )
                raise ConflictError(details, operation_id=operation_id)
            succeeded = await self._locking.release_lock(
                operation_id,
                ConvergenceStatus.SUCCEEDED,
                merge_commit=result.merge_commit,
                pre_merge_commit=result.pre_merge_commit,
            )
            return succeeded

        reason = result.error or "Merge failed"
        if result.rolled_back or not result.attempted:
            outcome = (
                ConvergenceStatus.ROLLED_BACK
                if result.rolled_back
                else ConvergenceStatus.FAILED
            )
            await self._locking.release_lock(operation_id, outcome, failure_reason=reason)
            raise MergeFailureError(
                reason, rolled_back=result.rolled_back, operation_id=operation_id
            )

        # The target may be left partially merged: keep the lock for the operator.
        merging = await self.get_status(operation_id)
        merging.failure_reason = f"rollback failed: {reason}"
        await self._repo.save_details(merging)
        logger.critical(
            "Convergence %s: merge into %s failed and rollback to %s failed; "
            "target stays locked until force release and reconciliation",
            operation_id,
            operation.target_ref,
            result.pre_merge_commit,
        )
        raise MergeFailureError(reason, rolled_back=False, operation_id=operation_id)

    async def _publish_branch(self, operation: ConvergenceOperation, actor: Actor) -> None:
        await self._transitions.execute(
            operation.branch_id,
            TransitionEvent.PUBLISH,
            actor,
            reason=f"Published via convergence {operation.id}",
            metadata={"convergence_id": operation.id, "merge_commit": operation.merge_commit},
        )
        await self._store.publish_branch(operation.branch_id, actor.id)

    async def converge(self, branch_id: str, actor: Actor) -> ConvergenceOperation:
        """Create and immediately execute a convergence."""
        operation = await self.create(branch_id, actor)
        return await self.execute(operation.id, actor)

    async def cancel(self, operation_id: str, actor: Actor) -> ConvergenceOperation:
        """Fail a still-pending operation; only its publisher may cancel it."""
        operation = await self.get_status(operation_id)
        if operation.status != ConvergenceStatus.PENDING:
            raise StateError(
                "operation_pending",
                f"Cannot cancel convergence in '{operation.status}' status",
            )
        if operation.publisher_id != actor.id:
            raise AuthorizationError(
                "initiating_publisher",
                "Only the publisher who initiated this convergence can cancel it",
            )
        return await self._locking.release_lock(
            operation_id, ConvergenceStatus.FAILED, failure_reason=CANCELLED
        )

    async def force_release(
        self, operation_id: str, actor: Actor
    ) -> ReconciliationReport:
        """Administrator-only: free a stuck target and report what the merge left behind."""
        if not actor.has_role(Role.ADMINISTRATOR):
            raise AuthorizationError(
                "administrator", "Only administrators can force release a convergence lock"
            )
        await self._locking.force_release_lock(operation_id)
        return await self.reconcile(operation_id)

    async def reconcile(self, operation_id: str) -> ReconciliationReport:
        """Compare the target head with the head recorded before merging."""
        operation = await self.get_status(operation_id)
        head = await self._vcs.get_head_commit(operation.target_ref)
        pre = operation.pre_merge_commit

        if pre is None:
            merge_written = False
            detail = "Operation never reached the merge phase; target untouched"
        elif head == pre:
            merge_written = False
            detail = f"Target {operation.target_ref} is still at the pre-merge head"
        elif operation.merge_commit and head == operation.merge_commit:
            merge_written = True
            detail = "Target points at the recorded merge commit"
        else:
            merge_written = True
            detail = (
                f"Target {operation.target_ref} moved from {pre} to {head}; "
                "inspect and reset manually if the merge is unwanted"
            )

        report = ReconciliationReport(
            operation_id=operation.id,
            target_ref=operation.target_ref,
            status=operation.status,
            pre_merge_commit=pre,
            target_head=head,
            merge_commit=operation.merge_commit,
            merge_written=merge_written,
            detail=detail,
        )
        log = logger.warning if merge_written else logger.info
        log("Reconciled convergence %s: %s", operation_id, detail)
        return report
