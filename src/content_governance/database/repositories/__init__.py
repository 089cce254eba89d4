"""Repository modules for each Cosmos DB container."""

from content_governance.database.repositories.branches import (
    BranchRepository,
    TransitionRepository,
)
from content_governance.database.repositories.contents import (
    ContentRepository,
    VersionRepository,
)
from content_governance.database.repositories.convergence import ConvergenceRepository

__all__ = [
    "BranchRepository",
    "ContentRepository",
    "ConvergenceRepository",
    "TransitionRepository",
    "VersionRepository",
]
