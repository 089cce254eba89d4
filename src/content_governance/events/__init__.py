"""Event contracts and publishing interfaces for the audit collaborator."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from content_governance.events.contracts import (
    BRANCH_TRANSITION,
    CONVERGENCE_REQUEST,
    CONVERGENCE_STATUS,
    ConvergenceRequest,
    EventEnvelope,
)
from content_governance.events.servicebus import ServiceBusPublisher


@runtime_checkable
class EventPublisher(Protocol):
    """Protocol for publishing audit events in emission order."""

    async def publish(
        self,
        event_type: str,
        data: dict[str, Any] | str,
        *,
        ordering_key: str | None = None,
    ) -> None:
        """Send an event to connected consumers."""
        ...


__all__ = [
    "BRANCH_TRANSITION",
    "CONVERGENCE_REQUEST",
    "CONVERGENCE_STATUS",
    "ConvergenceRequest",
    "EventEnvelope",
    "EventPublisher",
    "ServiceBusPublisher",
]
