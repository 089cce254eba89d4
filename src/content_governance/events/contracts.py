"""Typed contracts for audit events and command payloads."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field

from content_governance.models.branch import Actor, Role

BRANCH_TRANSITION = "branch-transition"
CONVERGENCE_STATUS = "convergence-status"
CONVERGENCE_REQUEST = "convergence-request"


class EventEnvelope(BaseModel):
    """Canonical event envelope used on Service Bus."""

    event: str
    data: dict[str, Any] | str

    @classmethod
    def from_message_body(cls, body: str) -> EventEnvelope:
        """Parse an event envelope from a JSON message body.

        Supports payloads where ``data`` was stringified JSON.
        """
        payload = json.loads(body)
        envelope = cls.model_validate(payload)
        if isinstance(envelope.data, str):
            try:
                decoded = json.loads(envelope.data)
            except json.JSONDecodeError:
                return envelope
            if isinstance(decoded, dict):
                envelope.data = decoded
        return envelope


class ConvergenceRequest(BaseModel):
    """Command payload asking the worker to execute a pending convergence."""

    operation_id: str
    actor_id: str
    actor_roles: list[Role] = Field(default_factory=list)
    request_id: str | None = None

    def actor(self) -> Actor:
        return Actor(id=self.actor_id, roles=self.actor_roles)
