"""Atomic merge of a branch into its target ref with rollback on failure."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel

from content_governance.models.convergence import ConflictDetail, ConflictType
from content_governance.vcs import Mergeability

if TYPE_CHECKING:
    from content_governance.models.branch import Branch
    from content_governance.vcs import VersionControl

logger = logging.getLogger(__name__)


class MergeContext(BaseModel):
    branch_ref: str
    target_ref: str
    branch_id: str
    publisher_id: str
    message: str | None = None


class MergeResult(BaseModel):
    """Outcome of ``atomic_merge``.

    ``attempted`` is False when the target head could not be read, in which case
    nothing was written. ``rolled_back`` is True when a failed merge was undone
    and the target head verified to be back at ``pre_merge_commit``.
    """

    success: bool
    merge_commit: str | None = None
    pre_merge_commit: str | None = None
    error: str | None = None
    attempted: bool = True
    rolled_back: bool = False


def convergence_message(branch: Branch) -> str:
    return (
        f"Converge branch '{branch.name}' ({branch.id[:8]})\n\n"
        "This merge was performed through the convergence process.\n"
        "All changes have been validated and approved before merging."
    )


class MergeExecutor:
    """The only writer of a target ref's head; callers must hold the target lock."""

    def __init__(self, vcs: VersionControl) -> None:
        self._vcs = vcs

    async def atomic_merge(self, context: MergeContext) -> MergeResult:
        try:
            pre_merge_commit = await self._vcs.get_head_commit(context.target_ref)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Cannot read head of %s before merging: %s", context.target_ref, exc
            )
            return MergeResult(
                success=False,
                error=f"Failed to read current head of {context.target_ref}: {exc}",
                attempted=False,
            )

        message = context.message or (
            f"Merge branch '{context.branch_ref}' into {context.target_ref}"
        )
        try:
            merge_commit = await self._vcs.merge_branch(
                context.branch_ref,
                context.target_ref,
                message=message,
                author=context.publisher_id,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Merge of %s into %s failed, rolling back to %s: %s",
                context.branch_ref,
                context.target_ref,
                pre_merge_commit,
                exc,
            )
            rolled_back = await self._rollback(context.target_ref, pre_merge_commit)
            return MergeResult(
                success=False,
                pre_merge_commit=pre_merge_commit,
                error=str(exc) or "Merge failed",
                rolled_back=rolled_back,
            )

        logger.info(
            "Merged %s into %s at %s", context.branch_ref, context.target_ref, merge_commit
        )
        return MergeResult(
            success=True, merge_commit=merge_commit, pre_merge_commit=pre_merge_commit
        )

    async def _rollback(self, ref: str, commit: str) -> bool:
        try:
            await self._vcs.reset_to_commit(ref, commit)
            head = await self._vcs.get_head_commit(ref)
        except Exception:  # noqa: BLE001
            logger.critical("Rollback of %s to %s failed", ref, commit, exc_info=True)
            return False
        if head != commit:
            logger.critical(
                "Rollback of %s left head at %s instead of %s", ref, head, commit
            )
            return False
        return True

    async def dry_run_merge(self, branch_ref: str, target_ref: str) -> Mergeability:
        """Probe mergeability without moving any ref."""
        try:
            return await self._vcs.check_mergeability(branch_ref, target_ref)
        except Exception as exc:  # noqa: BLE001
            return Mergeability(
                can_merge=False,
                conflicts=[
                    ConflictDetail(
                        path="*",
                        type=ConflictType.CONTENT,
                        description=str(exc) or "Unknown error",
                    )
                ],
            )
