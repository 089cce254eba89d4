"""Branch business logic: create, staff, refresh and remove branches."""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING

from content_governance.errors import AuthorizationError, NotFoundError, StateError
from content_governance.models.base import utcnow
from content_governance.models.branch import Branch, BranchState, Role, Visibility

if TYPE_CHECKING:
    from content_governance.content.versions import ContentVersionStore
    from content_governance.database.repositories import (
        BranchRepository,
        ConvergenceRepository,
    )
    from content_governance.models.branch import Actor
    from content_governance.vcs import VersionControl

logger = logging.getLogger(__name__)

BRANCH_REF_PREFIX = "branches/"
_EDITABLE_STAFF_STATES = frozenset({BranchState.DRAFT, BranchState.REVIEW})
_REFRESH_ATTEMPTS = 3


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    encoded = ""
    while True:
        value, remainder = divmod(value, 36)
        encoded = digits[remainder] + encoded
        if value == 0:
            return encoded


def generate_branch_slug(name: str, owner_id: str, *, now_ms: int | None = None) -> str:
    """URL-safe slug made unique by the owner id prefix and a base-36 timestamp."""
    base = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")[:80] or "branch"
    stamp = _base36(now_ms if now_ms is not None else time.time_ns() // 1_000_000)
    return f"{base}-{owner_id[:8]}-{stamp}"


class BranchService:
    """Branch CRUD on top of the repositories and the version-control primitive."""

    def __init__(
        self,
        branches: BranchRepository,
        convergence: ConvergenceRepository,
        store: ContentVersionStore,
        vcs: VersionControl,
    ) -> None:
        self._branches = branches
        self._convergence = convergence
        self._store = store
        self._vcs = vcs

    async def get_branch(self, branch_id: str) -> Branch:
        branch = await self._branches.get_branch(branch_id)
        if branch is None:
            raise NotFoundError("Branch", branch_id)
        return branch

    async def list_by_state(self, state: BranchState) -> list[Branch]:
        return await self._branches.list_by_state(state)

    async def create_branch(
        self,
        name: str,
        owner: Actor,
        *,
        base_ref: str = "main",
        description: str | None = None,
        visibility: Visibility = Visibility.PRIVATE,
        labels: list[str] | None = None,
        reviewers: list[str] | None = None,
        collaborators: list[str] | None = None,
    ) -> Branch:
        """Fork ``base_ref`` into a new isolated ref and record the branch in draft."""
        slug = generate_branch_slug(name, owner.id)
        git_ref = f"{BRANCH_REF_PREFIX}{slug}"
        base_commit = await self._vcs.create_ref(git_ref, base_ref)

        branch = Branch(
            name=name,
            slug=slug,
            owner_id=owner.id,
            base_ref=base_ref,
            base_commit=base_commit,
            head_commit=base_commit,
            git_ref=git_ref,
            visibility=visibility,
            description=description,
            labels=list(labels or []),
            reviewers=[r for r in reviewers or [] if r != owner.id],
            collaborators=list(collaborators or []),
        )
        await self._branches.create(branch)
        logger.info("Created branch %s (%s) from %s@%s", branch.id, slug, base_ref, base_commit)
        return branch

    async def _update_staff(
        self,
        branch_id: str,
        actor: Actor,
        *,
        reviewers: list[str] | None,
        collaborators: list[str] | None,
    ) -> Branch:
        found = await self._branches.read_with_etag(branch_id, branch_id)
        if found is None:
            raise NotFoundError("Branch", branch_id)
        branch, etag = found
        if actor.id != branch.owner_id and not actor.has_role(Role.ADMINISTRATOR):
            raise AuthorizationError(
                "owner_or_administrator",
                "Only the branch owner or administrators can change branch staff",
            )
        if branch.state not in _EDITABLE_STAFF_STATES:
            raise StateError(
                "branch_open", f"Staff cannot change on a {branch.state} branch"
            )
        if reviewers is not None:
            if branch.owner_id in reviewers:
                raise StateError("not_owner", "Branch owner cannot review their own branch")
            branch.reviewers = list(dict.fromkeys(reviewers))
        if collaborators is not None:
            branch.collaborators = list(dict.fromkeys(collaborators))
        if not await self._branches.replace_if_unchanged(branch, etag):
            raise StateError(
                "branch_unchanged", f"Branch {branch_id} was modified concurrently"
            )
        return branch

    async def assign_reviewers(
        self, branch_id: str, reviewer_ids: list[str], actor: Actor
    ) -> Branch:
        return await self._update_staff(
            branch_id, actor, reviewers=reviewer_ids, collaborators=None
        )

    async def set_collaborators(
        self, branch_id: str, collaborator_ids: list[str], actor: Actor
    ) -> Branch:
        return await self._update_staff(
            branch_id, actor, reviewers=None, collaborators=collaborator_ids
        )

    async def refresh_head(self, branch: Branch) -> Branch:
        """Record the branch ref's current head commit and return the stored branch.

        The write is guarded by the branch etag. A concurrent change (a
        transition, a staff edit) is re-read and kept, never overwritten, so
        callers always see the latest state.
        """
        head = await self._vcs.get_head_commit(branch.git_ref)
        for _ in range(_REFRESH_ATTEMPTS):
            found = await self._branches.read_with_etag(branch.id, branch.id)
            if found is None:
                raise NotFoundError("Branch", branch.id)
            current, etag = found
            if current.head_commit == head:
                return current
            current.head_commit = head
            if await self._branches.replace_if_unchanged(current, etag):
                return current
            logger.debug("Branch %s changed while recording head %s; retrying", branch.id, head)
        raise StateError("branch_unchanged", f"Branch {branch.id} was modified concurrently")

    async def remove_branch(self, branch_id: str, actor: Actor) -> Branch:
        """Soft-delete a branch with its content items and convergence operations.

        Refused while a convergence for the branch is pending or running, and
        when the branch changes between the checks and the delete. Versions and
        transition records are left in place.
        """
        found = await self._branches.read_with_etag(branch_id, branch_id)
        if found is None:
            raise NotFoundError("Branch", branch_id)
        branch, etag = found
        if actor.id != branch.owner_id and not actor.has_role(Role.ADMINISTRATOR):
            raise AuthorizationError(
                "owner_or_administrator",
                "Only the branch owner or administrators can remove branches",
            )
        operations = await self._convergence.list_by_branch(branch_id)
        if any(not op.is_terminal for op in operations):
            raise StateError(
                "no_active_convergence",
                "Branch has a convergence in progress and cannot be removed",
            )

        branch.deleted_at = utcnow()
        if not await self._branches.replace_if_unchanged(branch, etag):
            raise StateError(
                "branch_unchanged", f"Branch {branch_id} was modified concurrently"
            )
        removed_items = await self._store.remove_branch_content(branch_id)
        for operation in operations:
            await self._convergence.soft_delete(operation, operation.target_ref)
        logger.info(
            "Removed branch %s (%d content item(s), %d operation(s))",
            branch_id,
            removed_items,
            len(operations),
        )
        return branch
