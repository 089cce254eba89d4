"""Generic repository over one Cosmos DB container."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar, cast

from azure.core import MatchConditions
from azure.cosmos.exceptions import (
    CosmosBatchOperationError,
    CosmosHttpResponseError,
    CosmosResourceNotFoundError,
)

from content_governance.models.base import DocumentBase, utcnow

if TYPE_CHECKING:
    from azure.cosmos.aio import DatabaseProxy

logger = logging.getLogger(__name__)

HTTP_CONFLICT = 409
HTTP_PRECONDITION_FAILED = 412

BatchOperation = tuple[Any, ...]
T = TypeVar("T", bound=DocumentBase)


class BaseRepository(Generic[T]):
    """CRUD, query and optimistic-concurrency helpers for one container."""

    container_name: ClassVar[str]
    model_class: type[T]

    def __init__(self, database: DatabaseProxy) -> None:
        self._container = database.get_container_client(self.container_name)

    @staticmethod
    def to_body(item: DocumentBase) -> dict[str, Any]:
        return item.model_dump(mode="json", exclude_none=True)

    async def create(self, item: T) -> T:
        await self._container.create_item(body=self.to_body(item))
        return item

    async def get(self, item_id: str, partition_key: str) -> T | None:
        """Point-read a live document, or None when missing or soft-deleted."""
        try:
            data = cast(
                "dict[str, Any]",
                await self._container.read_item(item=item_id, partition_key=partition_key),
            )
        except CosmosResourceNotFoundError:
            return None
        if data.get("deleted_at") is not None:
            return None
        return self.model_class.model_validate(data)

    async def update(self, item: T, partition_key: str) -> T:  # noqa: ARG002
        item.updated_at = utcnow()
        await self._container.replace_item(item=item.id, body=self.to_body(item))
        return item

    async def soft_delete(self, item: T, partition_key: str) -> T:
        item.deleted_at = utcnow()
        return await self.update(item, partition_key)

    async def query(
        self,
        query: str,
        parameters: list[dict[str, Any]] | None = None,
        *,
        partition_key: str | None = None,
    ) -> list[T]:
        kwargs: dict[str, Any] = {"query": query, "parameters": parameters or []}
        if partition_key is not None:
            kwargs["partition_key"] = partition_key
        return [
            self.model_class.model_validate(data)
            async for data in self._container.query_items(**kwargs)
        ]

    async def read_with_etag(
        self, item_id: str, partition_key: str
    ) -> tuple[T, str] | None:
        """Point-read a live document together with its current etag."""
        try:
            data = cast(
                "dict[str, Any]",
                await self._container.read_item(item=item_id, partition_key=partition_key),
            )
        except CosmosResourceNotFoundError:
            return None
        etag = data.get("_etag")
        if data.get("deleted_at") is not None or not isinstance(etag, str):
            return None
        return self.model_class.model_validate(data), etag

    async def replace_if_unchanged(self, item: T, etag: str) -> bool:
        """Replace ``item`` only if the stored copy still has ``etag``."""
        item.updated_at = utcnow()
        try:
            await self._container.replace_item(
                item=item.id,
                body=self.to_body(item),
                etag=etag,
                match_condition=MatchConditions.IfNotModified,
            )
        except CosmosHttpResponseError as exc:
            if exc.status_code == HTTP_PRECONDITION_FAILED:
                return False
            raise
        return True

    async def execute_batch(
        self, operations: list[BatchOperation], partition_key: str
    ) -> bool:
        """Run a transactional batch; return False when any operation was rejected."""
        try:
            await self._container.execute_item_batch(
                batch_operations=operations, partition_key=partition_key
            )
        except CosmosBatchOperationError as exc:
            logger.debug(
                "Batch rejected in %s: partition=%s index=%s status=%s",
                self.container_name,
                partition_key,
                exc.error_index,
                exc.status_code,
            )
            return False
        return True
