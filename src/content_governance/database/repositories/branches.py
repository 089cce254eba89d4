"""Repositories for the branches container (partitioned by /branch_id).

Branch documents and their transition records share a partition so a state
change and its audit row are committed in the same transactional batch.
"""

from __future__ import annotations

from content_governance.database.repositories.base import BaseRepository
from content_governance.models.base import utcnow
from content_governance.models.branch import Branch, BranchState, BranchTransition


class BranchRepository(BaseRepository[Branch]):
    container_name = "branches"
    model_class = Branch

    async def get_branch(self, branch_id: str) -> Branch | None:
        return await self.get(branch_id, branch_id)

    async def list_by_state(self, state: BranchState) -> list[Branch]:
        """Fetch live branches currently in ``state``."""
        return await self.query(
            "SELECT * FROM c WHERE c.doc_type = 'branch' AND c.state = @state"
            " AND NOT IS_DEFINED(c.deleted_at)"
            " ORDER BY c.created_at DESC",
            [{"name": "@state", "value": state.value}],
        )

    async def apply_transition(
        self, branch: Branch, etag: str, transition: BranchTransition
    ) -> bool:
        """Persist the new branch state and its transition record atomically.

        Returns False when the branch changed since ``etag`` was read.
        """
        branch.updated_at = utcnow()
        return await self.execute_batch(
            [
                (
                    "replace",
                    (branch.id, self.to_body(branch)),
                    {"if_match_etag": etag},
                ),
                ("create", (self.to_body(transition),)),
            ],
            partition_key=branch.id,
        )


class TransitionRepository(BaseRepository[BranchTransition]):
    container_name = "branches"
    model_class = BranchTransition

    async def list_by_branch(self, branch_id: str) -> list[BranchTransition]:
        """Fetch a branch's transition history, newest first."""
        return await self.query(
            "SELECT * FROM c WHERE c.doc_type = 'transition'"
            " AND c.branch_id = @branch_id"
            " ORDER BY c.created_at DESC",
            [{"name": "@branch_id", "value": branch_id}],
            partition_key=branch_id,
        )

    async def get_latest(self, branch_id: str) -> BranchTransition | None:
        results = await self.list_by_branch(branch_id)
        return results[0] if results else None
