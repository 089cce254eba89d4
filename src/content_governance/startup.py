"""Wiring of repositories and services shared by the worker and the operator CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from azure.core.exceptions import AzureError

from content_governance.content.versions import ContentVersionStore
from content_governance.convergence import (
    ConflictDetectionService,
    ConvergenceCoordinator,
    LockingService,
    MergeExecutor,
)
from content_governance.database.client import CosmosClient
from content_governance.database.repositories import (
    BranchRepository,
    ContentRepository,
    ConvergenceRepository,
    TransitionRepository,
    VersionRepository,
)
from content_governance.workflow import BranchService, TransitionService

if TYPE_CHECKING:
    from azure.cosmos.aio import DatabaseProxy

    from content_governance.config import Settings
    from content_governance.events import EventPublisher
    from content_governance.vcs import VersionControl

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Services:
    convergence_repo: ConvergenceRepository
    store: ContentVersionStore
    branches: BranchService
    transitions: TransitionService
    locking: LockingService
    coordinator: ConvergenceCoordinator


async def init_database(settings: Settings) -> CosmosClient:
    """Connect to Cosmos DB, creating containers outside production.

    Raises ConnectionError with an operator-facing message on failure.
    """
    cosmos = CosmosClient(settings.cosmos)
    try:
        await cosmos.initialize()
        if settings.app.is_development:
            await cosmos.ensure_containers()
    except AzureError as exc:
        await cosmos.close()
        msg = f"Cannot connect to Cosmos DB at {settings.cosmos.endpoint}: {exc}"
        raise ConnectionError(msg) from exc
    logger.info("Cosmos DB ready: database=%s", settings.cosmos.database)
    return cosmos


def build_services(
    database: DatabaseProxy,
    vcs: VersionControl,
    events: EventPublisher,
    settings: Settings,
) -> Services:
    """Construct every service with its repositories injected."""
    branch_repo = BranchRepository(database)
    convergence_repo = ConvergenceRepository(database)
    store = ContentVersionStore(
        ContentRepository(database),
        VersionRepository(database),
        branch_repo,
        config=settings.convergence,
    )
    branches = BranchService(branch_repo, convergence_repo, store, vcs)
    transitions = TransitionService(
        branch_repo, TransitionRepository(database), convergence_repo, events
    )
    locking = LockingService(convergence_repo, events)
    coordinator = ConvergenceCoordinator(
        convergence_repo,
        branches,
        transitions,
        locking,
        ConflictDetectionService(vcs),
        MergeExecutor(vcs),
        store,
        vcs,
        events,
    )
    return Services(
        convergence_repo=convergence_repo,
        store=store,
        branches=branches,
        transitions=transitions,
        locking=locking,
        coordinator=coordinator,
    )
