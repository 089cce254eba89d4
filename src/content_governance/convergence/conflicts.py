"""Detect paths modified concurrently on a branch and its target."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from content_governance.models.convergence import ConflictDetail, ConflictType
from content_governance.vcs import ChangeKind

if TYPE_CHECKING:
    from content_governance.vcs import FileChange, VersionControl

logger = logging.getLogger(__name__)

_CONFLICT_TYPES = {
    ChangeKind.MODIFIED: ConflictType.CONTENT,
    ChangeKind.ADDED: ConflictType.CONTENT,
    ChangeKind.RENAMED: ConflictType.RENAME,
    ChangeKind.DELETED: ConflictType.DELETE,
}


class ConflictCheckResult(BaseModel):
    has_conflicts: bool
    conflicts: list[ConflictDetail] = Field(default_factory=list)
    merge_base: str | None = None


def describe_conflict(path: str, conflict_type: ConflictType, target_ref: str) -> str:
    if conflict_type == ConflictType.CONTENT:
        return f'File "{path}" was modified in both the branch and {target_ref}'
    if conflict_type == ConflictType.RENAME:
        return f'File "{path}" was renamed in {target_ref} and modified in the branch'
    return f'File "{path}" was deleted in {target_ref} but modified in the branch'


class ConflictDetectionService:
    """Compare branch and target changes since their merge base."""

    def __init__(self, vcs: VersionControl) -> None:
        self._vcs = vcs

    async def check_conflicts(
        self, branch_ref: str, target_ref: str = "main"
    ) -> ConflictCheckResult:
        """List every path changed on both sides, classified by the target-side change.

        Version-control errors propagate; an unknown conflict state is never
        reported as clean.
        """
        branch_changes = await self._vcs.get_changed_files(branch_ref, target_ref)
        merge_base = await self._vcs.get_merge_base(branch_ref, target_ref)
        target_changes = await self._vcs.get_changed_files_since_commit(
            target_ref, merge_base
        )

        branch_paths: set[str] = set()
        for change in branch_changes:
            branch_paths.add(change.path)
            if change.old_path:
                branch_paths.add(change.old_path)

        conflicts: list[ConflictDetail] = []
        for change in target_changes:
            path = _overlap(change, branch_paths)
            if path is None:
                continue
            conflict_type = _CONFLICT_TYPES[change.status]
            conflicts.append(
                ConflictDetail(
                    path=path,
                    type=conflict_type,
                    description=describe_conflict(path, conflict_type, target_ref),
                )
            )

        if conflicts:
            logger.info(
                "%d conflict(s) between %s and %s: %s",
                len(conflicts),
                branch_ref,
                target_ref,
                ", ".join(c.path for c in conflicts),
            )
        return ConflictCheckResult(
            has_conflicts=bool(conflicts), conflicts=conflicts, merge_base=merge_base
        )

    @staticmethod
    def can_auto_resolve(conflicts: list[ConflictDetail]) -> bool:
        """Conflicts are never resolved automatically; only an empty list passes."""
        return not conflicts


def _overlap(change: FileChange, branch_paths: set[str]) -> str | None:
    if change.path in branch_paths:
        return change.path
    if change.old_path and change.old_path in branch_paths:
        return change.old_path
    return None
