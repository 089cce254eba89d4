"""Convergence of approved branches into their target refs."""

from content_governance.convergence.conflicts import (
    ConflictCheckResult,
    ConflictDetectionService,
)
from content_governance.convergence.coordinator import (
    ConvergenceCoordinator,
    ReconciliationReport,
    ValidationReport,
)
from content_governance.convergence.locking import LockingService
from content_governance.convergence.merge import MergeContext, MergeExecutor, MergeResult

__all__ = [
    "ConflictCheckResult",
    "ConflictDetectionService",
    "ConvergenceCoordinator",
    "LockingService",
    "MergeContext",
    "MergeExecutor",
    "MergeResult",
    "ReconciliationReport",
    "ValidationReport",
]
