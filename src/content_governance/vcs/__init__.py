"""Version-control primitive consumed by conflict detection and merging."""

from __future__ import annotations

from enum import StrEnum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from content_governance.models.convergence import ConflictDetail


class ChangeKind(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class FileChange(BaseModel):
    path: str
    status: ChangeKind
    old_path: str | None = None


class Mergeability(BaseModel):
    can_merge: bool
    conflicts: list[ConflictDetail] = Field(default_factory=list)


@runtime_checkable
class VersionControl(Protocol):
    """Ref and commit operations on the content repository.

    Refs are branch names such as ``main`` or ``branches/q3-guidelines``.
    Implementations raise ``VersionControlError`` on failure.
    """

    async def get_changed_files(
        self, branch_ref: str, target_ref: str
    ) -> list[FileChange]:
        """Paths changed on ``branch_ref`` since its merge base with ``target_ref``."""
        ...

    async def get_changed_files_since_commit(
        self, ref: str, commit: str
    ) -> list[FileChange]:
        """Paths changed on ``ref`` after ``commit``."""
        ...

    async def get_merge_base(self, ref_a: str, ref_b: str) -> str: ...

    async def get_head_commit(self, ref: str) -> str: ...

    async def merge_branch(
        self, branch_ref: str, target_ref: str, *, message: str, author: str
    ) -> str:
        """Merge ``branch_ref`` into ``target_ref`` and return the new commit id."""
        ...

    async def reset_to_commit(self, ref: str, commit: str) -> None: ...

    async def check_mergeability(
        self, branch_ref: str, target_ref: str
    ) -> Mergeability:
        """Probe a merge without moving any ref."""
        ...

    async def create_ref(self, ref: str, start_point: str) -> str:
        """Create ``ref`` at ``start_point`` and return the commit it points to."""
        ...


__all__ = ["ChangeKind", "FileChange", "Mergeability", "VersionControl"]
