"""Repository for the convergence_operations container (partitioned by /target_ref).

Each target ref's partition holds its operations plus at most one
``TargetLock`` document with a fixed id. Lock acquisition creates that
document and flips the operation to ``validating`` in a single transactional
batch: the create fails with 409 while another operation holds the target, and
the etag match fails if the operation changed since it was read. Either way
nothing is written.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, cast

from azure.cosmos.exceptions import CosmosResourceNotFoundError

from content_governance.database.repositories.base import BaseRepository
from content_governance.models.base import format_timestamp
from content_governance.models.convergence import (
    TARGET_LOCK_ID,
    ConvergenceOperation,
    ConvergenceStatus,
    TargetLock,
)

logger = logging.getLogger(__name__)

_OPERATIONS = "c.doc_type = 'operation' AND NOT IS_DEFINED(c.deleted_at)"


class ConvergenceRepository(BaseRepository[ConvergenceOperation]):
    """Data access and atomic status changes for convergence operations."""

    container_name = "convergence_operations"
    model_class = ConvergenceOperation

    async def find(self, operation_id: str) -> ConvergenceOperation | None:
        """Look up an operation by id when its target ref is not known."""
        results = await self.query(
            f"SELECT * FROM c WHERE {_OPERATIONS} AND c.id = @id",
            [{"name": "@id", "value": operation_id}],
        )
        return results[0] if results else None

    async def list_by_branch(self, branch_id: str) -> list[ConvergenceOperation]:
        """Fetch all operations for a branch, newest first."""
        return await self.query(
            f"SELECT * FROM c WHERE {_OPERATIONS} AND c.branch_id = @branch_id"
            " ORDER BY c.created_at DESC",
            [{"name": "@branch_id", "value": branch_id}],
        )

    async def get_latest_for_branch(self, branch_id: str) -> ConvergenceOperation | None:
        results = await self.list_by_branch(branch_id)
        return results[0] if results else None

    async def find_active(self, target_ref: str) -> ConvergenceOperation | None:
        """Return the operation currently validating or merging on ``target_ref``."""
        results = await self.query(
            f"SELECT * FROM c WHERE {_OPERATIONS}"
            " AND c.target_ref = @target_ref"
            " AND c.status IN ('validating', 'merging')"
            " ORDER BY c.created_at ASC",
            [{"name": "@target_ref", "value": target_ref}],
            partition_key=target_ref,
        )
        return results[0] if results else None

    async def find_queued_ahead(
        self, operation: ConvergenceOperation
    ) -> ConvergenceOperation | None:
        """Return the oldest pending operation that must win before ``operation``.

        Ordering is by ``created_at``, then by id so exact ties resolve to the
        lexicographically smaller id. The query only orders on ``created_at``
        so it runs on the default index; the id tie-break happens here.
        """
        candidates = await self.query(
            f"SELECT * FROM c WHERE {_OPERATIONS}"
            " AND c.target_ref = @target_ref"
            " AND c.status = 'pending'"
            " AND c.id != @id"
            " AND c.created_at <= @created_at"
            " ORDER BY c.created_at ASC",
            [
                {"name": "@target_ref", "value": operation.target_ref},
                {"name": "@id", "value": operation.id},
                {"name": "@created_at", "value": format_timestamp(operation.created_at)},
            ],
            partition_key=operation.target_ref,
        )
        ahead = [c for c in candidates if c.queued_before(operation)]
        return min(ahead, key=lambda c: (c.created_at, c.id)) if ahead else None

    async def get_lock(self, target_ref: str) -> TargetLock | None:
        found = await self._read_lock(target_ref)
        return found[0] if found else None

    async def list_locks(self) -> list[TargetLock]:
        """Fetch every held target lock across all partitions."""
        return [
            TargetLock.model_validate(data)
            async for data in self._container.query_items(
                query="SELECT * FROM c WHERE c.doc_type = 'lock'", parameters=[]
            )
        ]

    async def claim_lock(
        self, operation: ConvergenceOperation, now: datetime
    ) -> ConvergenceOperation | None:
        """Create the target lock and flip the operation to validating atomically.

        Returns the updated operation, or None when the operation is no longer
        pending or another operation won the target.
        """
        found = await self.read_with_etag(operation.id, operation.target_ref)
        if found is None:
            return None
        current, etag = found
        if current.status != ConvergenceStatus.PENDING:
            return None

        claimed = current.model_copy(
            update={
                "status": ConvergenceStatus.VALIDATING,
                "started_at": now,
                "updated_at": now,
                "blocked_by": None,
            }
        )
        lock = TargetLock(
            target_ref=current.target_ref,
            holder_id=current.id,
            branch_id=current.branch_id,
            acquired_at=now,
        )
        committed = await self.execute_batch(
            [
                ("create", (self.to_body(lock),)),
                (
                    "replace",
                    (claimed.id, self.to_body(claimed)),
                    {"if_match_etag": etag},
                ),
            ],
            partition_key=current.target_ref,
        )
        return claimed if committed else None

    async def advance(
        self,
        operation: ConvergenceOperation,
        status: ConvergenceStatus,
        **changes: Any,
    ) -> ConvergenceOperation | None:
        """Move a non-lock-releasing status forward with an etag match.

        Returns None when the stored operation is no longer in
        ``operation.status`` or the edge is not allowed.
        """
        found = await self.read_with_etag(operation.id, operation.target_ref)
        if found is None:
            return None
        current, etag = found
        if current.status != operation.status or not current.can_transition_to(status):
            return None
        updated = current.model_copy(update={**changes, "status": status})
        if not await self.replace_if_unchanged(updated, etag):
            return None
        return updated

    async def save_details(
        self, operation: ConvergenceOperation
    ) -> ConvergenceOperation | None:
        """Persist non-status fields, provided the stored status is unchanged."""
        found = await self.read_with_etag(operation.id, operation.target_ref)
        if found is None:
            return None
        current, etag = found
        if current.status != operation.status:
            return None
        if not await self.replace_if_unchanged(operation, etag):
            return None
        return operation

    async def release(
        self,
        operation: ConvergenceOperation,
        status: ConvergenceStatus,
        now: datetime,
        **changes: Any,
    ) -> ConvergenceOperation | None:
        """Write a terminal status and drop the target lock in one batch.

        The lock document is deleted only when this operation holds it.
        """
        found = await self.read_with_etag(operation.id, operation.target_ref)
        if found is None:
            return None
        current, etag = found
        if not current.can_transition_to(status):
            return None

        released = current.model_copy(
            update={**changes, "status": status, "completed_at": now, "updated_at": now}
        )
        operations: list[tuple[Any, ...]] = [
            ("replace", (released.id, self.to_body(released)), {"if_match_etag": etag}),
        ]
        lock = await self._read_lock(current.target_ref)
        if lock is not None and lock[0].holder_id == current.id:
            operations.append(("delete", (TARGET_LOCK_ID,), {"if_match_etag": lock[1]}))
        elif lock is None and current.is_active:
            logger.warning(
                "Releasing operation %s on %s without a lock document",
                current.id,
                current.target_ref,
            )

        if not await self.execute_batch(operations, partition_key=current.target_ref):
            return None
        return released

    async def _read_lock(self, target_ref: str) -> tuple[TargetLock, str] | None:
        try:
            data = cast(
                "dict[str, Any]",
                await self._container.read_item(
                    item=TARGET_LOCK_ID, partition_key=target_ref
                ),
            )
        except CosmosResourceNotFoundError:
            return None
        return TargetLock.model_validate(data), cast("str", data.get("_etag", ""))
