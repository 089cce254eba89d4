"""Async Cosmos DB client initialization."""

from __future__ import annotations

import logging

from azure.cosmos import PartitionKey
from azure.cosmos.aio import CosmosClient as AzureCosmosClient
from azure.cosmos.aio import DatabaseProxy
from azure.identity.aio import DefaultAzureCredential

from content_governance.config import CosmosConfig

logger = logging.getLogger(__name__)

# container name -> partition key path
CONTAINERS: dict[str, str] = {
    "branches": "/branch_id",
    "convergence_operations": "/target_ref",
    "contents": "/branch_id",
}


class CosmosClient:
    """Manages the async Cosmos DB client and database reference."""

    def __init__(self, config: CosmosConfig) -> None:
        self._config = config
        self._client: AzureCosmosClient | None = None
        self._database: DatabaseProxy | None = None
        self._credential: DefaultAzureCredential | None = None

    async def initialize(self) -> None:
        """Create the client and obtain a database reference.

        Uses the account key when configured, otherwise Entra ID through
        ``DefaultAzureCredential``.
        """
        if self._config.key:
            credential: str | DefaultAzureCredential = self._config.key
        else:
            self._credential = DefaultAzureCredential()
            credential = self._credential
        self._client = AzureCosmosClient(self._config.endpoint, credential=credential)
        self._database = self._client.get_database_client(self._config.database)

    async def ensure_containers(self) -> None:
        """Create the database and containers if missing (emulator / dev bootstrap)."""
        if self._client is None:
            raise RuntimeError("CosmosClient not initialized, call initialize() first")
        database = await self._client.create_database_if_not_exists(self._config.database)
        for name, partition_path in CONTAINERS.items():
            await database.create_container_if_not_exists(
                id=name, partition_key=PartitionKey(path=partition_path)
            )
            logger.info("Container ready: %s (%s)", name, partition_path)
        self._database = database

    async def close(self) -> None:
        """Close the underlying client."""
        if self._client:
            await self._client.close()
            self._client = None
            self._database = None
        if self._credential:
            await self._credential.close()
            self._credential = None

    @property
    def database(self) -> DatabaseProxy:
        if self._database is None:
            raise RuntimeError("CosmosClient not initialized, call initialize() first")
        return self._database
