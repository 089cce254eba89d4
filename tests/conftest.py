"""Shared fixtures: an in-memory version-control double and common actors."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from content_governance.errors import VersionControlError
from content_governance.models.branch import Actor, Branch, BranchState, Role
from content_governance.vcs import FileChange, Mergeability

if TYPE_CHECKING:
    from collections.abc import Callable


class FakeVersionControl:
    """In-memory refs with scripted change lists and failure injection."""

    def __init__(self) -> None:
        self.heads: dict[str, str] = {"main": "c-main-0"}
        self.branch_changes: dict[str, list[FileChange]] = {}
        self.target_changes: dict[str, list[FileChange]] = {}
        self.merge_bases: dict[tuple[str, str], str] = {}
        self.mergeability: Mergeability = Mergeability(can_merge=True)
        self.merge_error: Exception | None = None
        self.reset_error: Exception | None = None
        self.head_error: Exception | None = None
        self.partial_write_on_failure = False
        self.resets: list[tuple[str, str]] = []
        self.merges: list[tuple[str, str, str, str]] = []
        self._counter = 0

    async def get_changed_files(self, branch_ref: str, target_ref: str) -> list[FileChange]:  # noqa: ARG002
        return list(self.branch_changes.get(branch_ref, []))

    async def get_changed_files_since_commit(self, ref: str, commit: str) -> list[FileChange]:  # noqa: ARG002
        return list(self.target_changes.get(ref, []))

    async def get_merge_base(self, ref_a: str, ref_b: str) -> str:
        return self.merge_bases.get((ref_a, ref_b), "c-base")

    async def get_head_commit(self, ref: str) -> str:
        if self.head_error is not None:
            raise self.head_error
        if ref not in self.heads:
            msg = f"unknown ref {ref}"
            raise VersionControlError(msg)
        return self.heads[ref]

    async def merge_branch(
        self, branch_ref: str, target_ref: str, *, message: str, author: str
    ) -> str:
        if self.merge_error is not None:
            if self.partial_write_on_failure:
                self.heads[target_ref] = "c-partial"
            raise self.merge_error
        self._counter += 1
        commit = f"c-merge-{self._counter}"
        self.merges.append((branch_ref, target_ref, message, author))
        self.heads[target_ref] = commit
        return commit

    async def reset_to_commit(self, ref: str, commit: str) -> None:
        if self.reset_error is not None:
            raise self.reset_error
        self.resets.append((ref, commit))
        self.heads[ref] = commit

    async def check_mergeability(self, branch_ref: str, target_ref: str) -> Mergeability:  # noqa: ARG002
        return self.mergeability

    async def create_ref(self, ref: str, start_point: str) -> str:
        commit = await self.get_head_commit(start_point)
        self.heads[ref] = commit
        return commit


@pytest.fixture
def vcs() -> FakeVersionControl:
    """Create an in-memory version control with a ``main`` ref."""
    return FakeVersionControl()


@pytest.fixture
def events() -> AsyncMock:
    """Create an event publisher mock."""
    publisher = AsyncMock()
    publisher.publish = AsyncMock()
    return publisher


@pytest.fixture
def owner() -> Actor:
    return Actor(id="owner-1", roles=[Role.CONTRIBUTOR])


@pytest.fixture
def reviewer() -> Actor:
    return Actor(id="reviewer-1", roles=[Role.REVIEWER])


@pytest.fixture
def publisher() -> Actor:
    return Actor(id="publisher-1", roles=[Role.PUBLISHER])


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", roles=[Role.ADMINISTRATOR])


@pytest.fixture
def make_branch() -> Callable[..., Branch]:
    """Return a factory for branches with sensible defaults."""

    def _make(**overrides: object) -> Branch:
        fields: dict[str, object] = {
            "id": "branch-1",
            "name": "Q3 guidelines",
            "slug": "q3-guidelines-owner-1-abc",
            "owner_id": "owner-1",
            "base_ref": "main",
            "base_commit": "c-main-0",
            "head_commit": "c-branch-1",
            "git_ref": "branches/q3-guidelines-owner-1-abc",
            "state": BranchState.DRAFT,
            "reviewers": ["reviewer-1"],
        }
        fields.update(overrides)
        return Branch.model_validate(fields)

    return _make
