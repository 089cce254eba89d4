"""Builders that turn persisted state changes into audit events."""

from __future__ import annotations

from typing import TYPE_CHECKING

from content_governance.events.contracts import BRANCH_TRANSITION, CONVERGENCE_STATUS
from content_governance.models.base import format_timestamp, utcnow

if TYPE_CHECKING:
    from content_governance.events import EventPublisher
    from content_governance.models.branch import BranchTransition
    from content_governance.models.convergence import (
        ConvergenceOperation,
        ConvergenceStatus,
    )


async def publish_transition(
    events: EventPublisher, transition: BranchTransition
) -> None:
    """Emit the audit event for a recorded branch transition."""
    await events.publish(
        BRANCH_TRANSITION,
        {
            "id": transition.id,
            "branch_id": transition.branch_id,
            "event": transition.event.value,
            "from_state": transition.from_state.value,
            "to_state": transition.to_state.value,
            "actor_id": transition.actor_id,
            "actor_type": transition.actor_type.value,
            "reason": transition.reason,
            "created_at": format_timestamp(transition.created_at),
        },
        ordering_key=transition.branch_id,
    )


async def publish_status(
    events: EventPublisher,
    operation: ConvergenceOperation,
    previous: ConvergenceStatus | None,
) -> None:
    """Emit the audit event for a convergence status change (``previous`` None on creation)."""
    await events.publish(
        CONVERGENCE_STATUS,
        {
            "id": operation.id,
            "branch_id": operation.branch_id,
            "target_ref": operation.target_ref,
            "from_status": previous.value if previous else None,
            "to_status": operation.status.value,
            "merge_commit": operation.merge_commit,
            "failure_reason": operation.failure_reason,
            "emitted_at": format_timestamp(utcnow()),
        },
        ordering_key=operation.target_ref,
    )
