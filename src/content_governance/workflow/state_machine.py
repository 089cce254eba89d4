"""Branch lifecycle: transition table and guards.

Guards run in a fixed order: authorization guards first, then the source-state
check, then preconditions. The first failing guard is reported by name, so a
caller always learns the specific reason a transition was refused.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from content_governance.errors import AuthorizationError, StateError
from content_governance.models.branch import BranchState, Role, TransitionEvent
from content_governance.models.convergence import ConvergenceStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from content_governance.models.branch import Actor, Branch
    from content_governance.models.convergence import ConvergenceOperation


class GuardKind(StrEnum):
    AUTHORIZATION = "authorization"
    PRECONDITION = "precondition"


@dataclass(frozen=True)
class GuardContext:
    branch: Branch
    actor: Actor
    latest_convergence: ConvergenceOperation | None = None


@dataclass(frozen=True)
class Guard:
    name: str
    kind: GuardKind
    message: str
    check: Callable[[GuardContext], bool]


@dataclass(frozen=True)
class GuardFailure:
    guard: str
    kind: GuardKind
    message: str

    def to_error(self) -> AuthorizationError | StateError:
        if self.kind == GuardKind.AUTHORIZATION:
            return AuthorizationError(self.guard, self.message)
        return StateError(self.guard, self.message)


VALID_TRANSITION = "valid_transition"

TRANSITIONS: dict[TransitionEvent, tuple[frozenset[BranchState], BranchState]] = {
    TransitionEvent.SUBMIT_FOR_REVIEW: (frozenset({BranchState.DRAFT}), BranchState.REVIEW),
    TransitionEvent.REQUEST_CHANGES: (frozenset({BranchState.REVIEW}), BranchState.DRAFT),
    TransitionEvent.APPROVE: (frozenset({BranchState.REVIEW}), BranchState.APPROVED),
    TransitionEvent.PUBLISH: (frozenset({BranchState.APPROVED}), BranchState.PUBLISHED),
    TransitionEvent.ARCHIVE: (
        frozenset(
            {
                BranchState.DRAFT,
                BranchState.REVIEW,
                BranchState.APPROVED,
                BranchState.PUBLISHED,
            }
        ),
        BranchState.ARCHIVED,
    ),
}

# Timestamp field stamped when a branch enters a state.
STATE_TIMESTAMPS: dict[BranchState, str] = {
    BranchState.REVIEW: "submitted_at",
    BranchState.APPROVED: "approved_at",
    BranchState.PUBLISHED: "published_at",
    BranchState.ARCHIVED: "archived_at",
}


def _is_owner_or_collaborator(ctx: GuardContext) -> bool:
    return ctx.actor.id == ctx.branch.owner_id or ctx.actor.id in ctx.branch.collaborators


def _is_reviewer(ctx: GuardContext) -> bool:
    return ctx.actor.id in ctx.branch.reviewers


def _not_owner(ctx: GuardContext) -> bool:
    return ctx.actor.id != ctx.branch.owner_id


def _has_publisher_role(ctx: GuardContext) -> bool:
    return ctx.actor.has_role(Role.PUBLISHER, Role.ADMINISTRATOR)


def _can_archive(ctx: GuardContext) -> bool:
    return ctx.actor.id == ctx.branch.owner_id or ctx.actor.has_role(Role.ADMINISTRATOR)


def _has_reviewers(ctx: GuardContext) -> bool:
    return len(ctx.branch.reviewers) > 0


def _convergence_succeeded(ctx: GuardContext) -> bool:
    latest = ctx.latest_convergence
    return latest is not None and latest.status == ConvergenceStatus.SUCCEEDED


GUARDS: dict[TransitionEvent, tuple[Guard, ...]] = {
    TransitionEvent.SUBMIT_FOR_REVIEW: (
        Guard(
            "owner_or_collaborator",
            GuardKind.AUTHORIZATION,
            "Only the branch owner or a collaborator can submit for review",
            _is_owner_or_collaborator,
        ),
        Guard(
            "has_reviewers",
            GuardKind.PRECONDITION,
            "Branch must have at least one reviewer assigned before submitting for review",
            _has_reviewers,
        ),
    ),
    TransitionEvent.REQUEST_CHANGES: (
        Guard(
            "is_reviewer",
            GuardKind.AUTHORIZATION,
            "Only assigned reviewers can request changes",
            _is_reviewer,
        ),
    ),
    TransitionEvent.APPROVE: (
        Guard(
            "is_reviewer",
            GuardKind.AUTHORIZATION,
            "Only assigned reviewers can approve",
            _is_reviewer,
        ),
        Guard(
            "not_owner",
            GuardKind.AUTHORIZATION,
            "Branch owner cannot approve their own branch",
            _not_owner,
        ),
    ),
    TransitionEvent.PUBLISH: (
        Guard(
            "has_publisher_role",
            GuardKind.AUTHORIZATION,
            "Only publishers or administrators can publish branches",
            _has_publisher_role,
        ),
        Guard(
            "convergence_succeeded",
            GuardKind.PRECONDITION,
            "Branch can only be published after a successful convergence",
            _convergence_succeeded,
        ),
    ),
    TransitionEvent.ARCHIVE: (
        Guard(
            "can_archive",
            GuardKind.AUTHORIZATION,
            "Only the branch owner or administrators can archive branches",
            _can_archive,
        ),
    ),
}


class BranchStateMachine:
    """Pure evaluation of branch transitions; persistence lives in ``TransitionService``."""

    def __init__(
        self,
        transitions: dict[TransitionEvent, tuple[frozenset[BranchState], BranchState]]
        | None = None,
        guards: dict[TransitionEvent, tuple[Guard, ...]] | None = None,
    ) -> None:
        self._transitions = transitions or TRANSITIONS
        self._guards = guards or GUARDS

    def target_state(self, event: TransitionEvent) -> BranchState:
        return self._transitions[event][1]

    def allowed_events(self, state: BranchState) -> list[TransitionEvent]:
        """Events with an edge out of ``state``, ignoring guards."""
        return [event for event, (sources, _) in self._transitions.items() if state in sources]

    def evaluate(self, event: TransitionEvent, ctx: GuardContext) -> GuardFailure | None:
        """Return the first failing guard, or None when the transition may proceed."""
        guards = self._guards.get(event, ())
        for guard in guards:
            if guard.kind == GuardKind.AUTHORIZATION and not guard.check(ctx):
                return GuardFailure(guard.name, guard.kind, guard.message)

        sources, target = self._transitions[event]
        if ctx.branch.state not in sources:
            return GuardFailure(
                VALID_TRANSITION,
                GuardKind.PRECONDITION,
                f"Cannot {event} from '{ctx.branch.state}' to '{target}'",
            )

        for guard in guards:
            if guard.kind == GuardKind.PRECONDITION and not guard.check(ctx):
                return GuardFailure(guard.name, guard.kind, guard.message)
        return None

    def ensure_allowed(self, event: TransitionEvent, ctx: GuardContext) -> BranchState:
        """Raise the failing guard's error, or return the target state."""
        failure = self.evaluate(event, ctx)
        if failure is not None:
            raise failure.to_error()
        return self.target_state(event)
