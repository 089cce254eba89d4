"""Persisting branch transitions together with their audit records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from content_governance.errors import NotFoundError, StateError
from content_governance.events.audit import publish_transition
from content_governance.models.base import utcnow
from content_governance.models.branch import BranchTransition, TransitionEvent
from content_governance.workflow.state_machine import (
    STATE_TIMESTAMPS,
    BranchStateMachine,
    GuardContext,
)

if TYPE_CHECKING:
    from content_governance.database.repositories import (
        BranchRepository,
        ConvergenceRepository,
        TransitionRepository,
    )
    from content_governance.events import EventPublisher
    from content_governance.models.branch import Actor, Branch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    guard: str | None = None
    reason: str | None = None


class TransitionService:
    """Run guarded state changes on branches.

    The branch update and its ``BranchTransition`` are written in one
    transactional batch guarded by the branch etag, so a transition either
    happens with exactly one audit record or not at all.
    """

    def __init__(
        self,
        branches: BranchRepository,
        transitions: TransitionRepository,
        convergence: ConvergenceRepository,
        events: EventPublisher,
        *,
        machine: BranchStateMachine | None = None,
    ) -> None:
        self._branches = branches
        self._transitions = transitions
        self._convergence = convergence
        self._events = events
        self._machine = machine or BranchStateMachine()

    @property
    def machine(self) -> BranchStateMachine:
        return self._machine

    async def _context(
        self, branch: Branch, event: TransitionEvent, actor: Actor
    ) -> GuardContext:
        latest = None
        if event == TransitionEvent.PUBLISH:
            latest = await self._convergence.get_latest_for_branch(branch.id)
        return GuardContext(branch=branch, actor=actor, latest_convergence=latest)

    async def execute(
        self,
        branch_id: str,
        event: TransitionEvent,
        actor: Actor,
        *,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Branch, BranchTransition]:
        """Apply ``event`` to a branch.

        Raises AuthorizationError or StateError naming the failing guard, and
        StateError(``branch_unchanged``) when the branch was modified
        concurrently.
        """
        found = await self._branches.read_with_etag(branch_id, branch_id)
        if found is None:
            raise NotFoundError("Branch", branch_id)
        branch, etag = found

        ctx = await self._context(branch, event, actor)
        target = self._machine.ensure_allowed(event, ctx)

        now = utcnow()
        transition = BranchTransition(
            branch_id=branch.id,
            from_state=branch.state,
            to_state=target,
            event=event,
            actor_id=actor.id,
            actor_type=actor.actor_type,
            reason=reason,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        changes: dict[str, Any] = {"state": target}
        if stamp := STATE_TIMESTAMPS.get(target):
            changes[stamp] = now
        updated = branch.model_copy(update=changes)

        if not await self._branches.apply_transition(updated, etag, transition):
            raise StateError(
                "branch_unchanged",
                f"Branch {branch_id} was modified concurrently; retry the transition",
            )
        logger.info(
            "Branch %s transitioned %s -> %s via %s by %s",
            branch.id,
            transition.from_state,
            transition.to_state,
            event,
            actor.id,
        )
        await publish_transition(self._events, transition)
        return updated, transition

    async def can_transition(
        self, branch_id: str, event: TransitionEvent, actor: Actor
    ) -> TransitionCheck:
        """Dry run of ``execute``; nothing is written."""
        branch = await self._branches.get_branch(branch_id)
        if branch is None:
            return TransitionCheck(allowed=False, guard="branch_exists", reason="Branch not found")
        failure = self._machine.evaluate(event, await self._context(branch, event, actor))
        if failure is not None:
            return TransitionCheck(allowed=False, guard=failure.guard, reason=failure.message)
        return TransitionCheck(allowed=True)

    async def history(self, branch_id: str) -> list[BranchTransition]:
        return await self._transitions.list_by_branch(branch_id)

    async def latest(self, branch_id: str) -> BranchTransition | None:
        return await self._transitions.get_latest(branch_id)
