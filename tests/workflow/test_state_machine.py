"""Tests for the branch lifecycle state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from content_governance.errors import AuthorizationError, StateError
from content_governance.models.branch import Actor, BranchState, Role, TransitionEvent
from content_governance.models.convergence import ConvergenceOperation, ConvergenceStatus
from content_governance.workflow.state_machine import (
    VALID_TRANSITION,
    BranchStateMachine,
    GuardContext,
    GuardKind,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from content_governance.models.branch import Branch


@pytest.fixture
def machine() -> BranchStateMachine:
    return BranchStateMachine()


def _operation(status: ConvergenceStatus) -> ConvergenceOperation:
    return ConvergenceOperation(
        branch_id="branch-1", publisher_id="publisher-1", target_ref="main", status=status
    )


@pytest.mark.unit
class TestTransitionTable:
    """Tests for allowed events per state."""

    def test_published_can_only_be_archived(self, machine: BranchStateMachine) -> None:
        """There is no edge from published back into the review flow."""
        assert machine.allowed_events(BranchState.PUBLISHED) == [TransitionEvent.ARCHIVE]

    def test_archived_is_terminal(self, machine: BranchStateMachine) -> None:
        """Archived branches have no outgoing transitions."""
        assert machine.allowed_events(BranchState.ARCHIVED) == []

    def test_review_edges(self, machine: BranchStateMachine) -> None:
        """A branch in review can be sent back, approved or archived."""
        assert set(machine.allowed_events(BranchState.REVIEW)) == {
            TransitionEvent.REQUEST_CHANGES,
            TransitionEvent.APPROVE,
            TransitionEvent.ARCHIVE,
        }


@pytest.mark.unit
class TestGuards:
    """Tests for guard evaluation order and results."""

    def test_owner_submits_with_reviewer(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
        owner: Actor,
    ) -> None:
        """An owner may submit a draft with a reviewer assigned."""
        ctx = GuardContext(branch=make_branch(), actor=owner)

        assert machine.evaluate(TransitionEvent.SUBMIT_FOR_REVIEW, ctx) is None
        assert machine.ensure_allowed(TransitionEvent.SUBMIT_FOR_REVIEW, ctx) == (
            BranchState.REVIEW
        )

    def test_submit_without_reviewers_fails_precondition(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
        owner: Actor,
    ) -> None:
        """Submitting with no reviewers names the has_reviewers guard."""
        ctx = GuardContext(branch=make_branch(reviewers=[]), actor=owner)

        failure = machine.evaluate(TransitionEvent.SUBMIT_FOR_REVIEW, ctx)

        assert failure is not None
        assert failure.guard == "has_reviewers"
        assert failure.kind == GuardKind.PRECONDITION

    def test_stranger_cannot_submit(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
    ) -> None:
        """Only the owner or a collaborator can submit."""
        ctx = GuardContext(branch=make_branch(), actor=Actor(id="someone-else"))

        with pytest.raises(AuthorizationError) as exc_info:
            machine.ensure_allowed(TransitionEvent.SUBMIT_FOR_REVIEW, ctx)

        assert exc_info.value.guard == "owner_or_collaborator"

    def test_collaborator_can_submit(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
    ) -> None:
        """Collaborators share the owner's right to submit."""
        branch = make_branch(collaborators=["collab-1"])
        ctx = GuardContext(branch=branch, actor=Actor(id="collab-1"))

        assert machine.evaluate(TransitionEvent.SUBMIT_FOR_REVIEW, ctx) is None

    def test_authorization_checked_before_source_state(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
        owner: Actor,
    ) -> None:
        """A non-reviewer approving a draft fails authorization, not the edge check."""
        ctx = GuardContext(branch=make_branch(state=BranchState.DRAFT), actor=owner)

        failure = machine.evaluate(TransitionEvent.APPROVE, ctx)

        assert failure is not None
        assert failure.guard == "is_reviewer"

    def test_owner_cannot_approve_own_branch(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
    ) -> None:
        """Self-approval is refused even when the owner is listed as reviewer."""
        branch = make_branch(state=BranchState.REVIEW, reviewers=["owner-1"])
        ctx = GuardContext(branch=branch, actor=Actor(id="owner-1"))

        failure = machine.evaluate(TransitionEvent.APPROVE, ctx)

        assert failure is not None
        assert failure.guard == "not_owner"

    def test_invalid_edge_is_state_error(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
        reviewer: Actor,
    ) -> None:
        """Approving a draft is not an edge in the table."""
        ctx = GuardContext(branch=make_branch(state=BranchState.DRAFT), actor=reviewer)

        with pytest.raises(StateError) as exc_info:
            machine.ensure_allowed(TransitionEvent.APPROVE, ctx)

        assert exc_info.value.guard == VALID_TRANSITION

    def test_publish_requires_successful_convergence(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
        publisher: Actor,
    ) -> None:
        """Publishing is blocked until the latest convergence succeeded."""
        branch = make_branch(state=BranchState.APPROVED)
        failed = GuardContext(
            branch=branch,
            actor=publisher,
            latest_convergence=_operation(ConvergenceStatus.FAILED),
        )
        succeeded = GuardContext(
            branch=branch,
            actor=publisher,
            latest_convergence=_operation(ConvergenceStatus.SUCCEEDED),
        )

        failure = machine.evaluate(TransitionEvent.PUBLISH, failed)

        assert failure is not None
        assert failure.guard == "convergence_succeeded"
        assert machine.evaluate(TransitionEvent.PUBLISH, succeeded) is None

    def test_admin_can_archive_any_branch(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
        admin: Actor,
    ) -> None:
        """Administrators may archive branches they do not own."""
        ctx = GuardContext(branch=make_branch(state=BranchState.PUBLISHED), actor=admin)

        assert machine.ensure_allowed(TransitionEvent.ARCHIVE, ctx) == BranchState.ARCHIVED

    def test_publisher_role_required(
        self,
        machine: BranchStateMachine,
        make_branch: Callable[..., Branch],
    ) -> None:
        """A reviewer without the publisher role cannot publish."""
        ctx = GuardContext(
            branch=make_branch(state=BranchState.APPROVED),
            actor=Actor(id="reviewer-1", roles=[Role.REVIEWER]),
        )

        failure = machine.evaluate(TransitionEvent.PUBLISH, ctx)

        assert failure is not None
        assert failure.guard == "has_publisher_role"
        assert failure.kind == GuardKind.AUTHORIZATION
