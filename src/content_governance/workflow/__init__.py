"""Branch lifecycle workflow."""

from content_governance.workflow.branches import BranchService
from content_governance.workflow.state_machine import (
    BranchStateMachine,
    GuardContext,
    GuardFailure,
)
from content_governance.workflow.transitions import TransitionCheck, TransitionService

__all__ = [
    "BranchService",
    "BranchStateMachine",
    "GuardContext",
    "GuardFailure",
    "TransitionCheck",
    "TransitionService",
]
