"""Pre-flight health checks for the Cosmos DB emulator and the content repository."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import httpx

if TYPE_CHECKING:
    from content_governance.config import Settings

logger = logging.getLogger(__name__)


async def check_dependencies(settings: Settings) -> bool:
    """Verify local dependencies are reachable. Return False if any are down."""
    failures: list[str] = []
    async with httpx.AsyncClient(timeout=3) as client:
        cosmos_url = settings.cosmos.endpoint
        if not cosmos_url:
            failures.append(
                "AZURE_COSMOS_ENDPOINT is not set; add it to .env (see .env.example)"
            )
        elif not cosmos_url.startswith("https://"):
            try:
                await client.get(f"{cosmos_url.rstrip('/')}/")
            except httpx.ConnectError:
                parsed = urlparse(cosmos_url)
                failures.append(f"Cosmos DB emulator is not running at {parsed.netloc}")

    repository = settings.git.repository_path
    if not repository:
        failures.append(
            "GIT_REPOSITORY_PATH is not set; add it to .env (see .env.example)"
        )
    elif not Path(repository).is_dir():
        failures.append(f"Content repository not found at {repository}")
    if shutil.which(settings.git.binary) is None:
        failures.append(f"git executable {settings.git.binary!r} is not on PATH")

    if failures:
        for failure in failures:
            logger.error(failure)
        logger.error("Start the Cosmos DB emulator and create the content repository first")
        return False
    return True
