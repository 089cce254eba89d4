"""Append-only, checksum-verified version history for content items.

Content converged into a target ref lives in its own partition
(``target_content_partition``). Items forked from there keep the version they
started at, which is the common base when the branch converges back.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from content_governance.config import ConvergenceConfig
from content_governance.content.diff import diff_versions, three_way_merge
from content_governance.errors import (
    ContentLimitError,
    NotFoundError,
    StaleVersionError,
    StateError,
)
from content_governance.models.base import utcnow
from content_governance.models.branch import BranchState
from content_governance.models.content import (
    ContentChange,
    ContentConflict,
    ContentItem,
    ContentMergeResult,
    ContentType,
    ContentVersion,
    MetadataSnapshot,
    compute_byte_size,
)

if TYPE_CHECKING:
    from content_governance.database.repositories import (
        BranchRepository,
        ContentRepository,
        VersionRepository,
    )
    from content_governance.models.branch import Actor, Branch
    from content_governance.models.diff import ContentDiff

logger = logging.getLogger(__name__)

MAX_SLUG_SUFFIX = 100
_SLUG_MAX_LENGTH = 80
TARGET_CONTENT_PREFIX = "target:"


def generate_content_slug(title: str) -> str:
    """Lowercase, hyphen-separated, URL-safe slug for a content title."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:_SLUG_MAX_LENGTH]
    return slug or "untitled"


def target_content_partition(target_ref: str) -> str:
    """Content partition holding what has been converged into ``target_ref``."""
    return f"{TARGET_CONTENT_PREFIX}{target_ref}"


@dataclass(frozen=True)
class _PlannedChange:
    item: ContentItem
    head: ContentVersion
    change: ContentChange
    target_item: ContentItem | None = None
    # Three-way merged body; None means take the branch head as is.
    body: str | None = None
    conflict: ContentConflict | None = None


class ChainVerification(BaseModel):
    """Outcome of walking a content item's version chain from head to root."""

    content_id: str
    valid: bool
    length: int
    corrupt_version_ids: list[str] = Field(default_factory=list)
    missing_parent_ids: list[str] = Field(default_factory=list)
    unreachable_version_ids: list[str] = Field(default_factory=list)


class ContentVersionStore:
    """Create, edit, revert and compare content inside a branch.

    Every edit appends a version whose parent is the previous head and moves
    ``current_version_id`` in the same transactional batch, guarded by the
    item's etag. A concurrent edit therefore fails with ``StaleVersionError``
    instead of forking the chain.
    """

    def __init__(
        self,
        contents: ContentRepository,
        versions: VersionRepository,
        branches: BranchRepository,
        *,
        config: ConvergenceConfig | None = None,
    ) -> None:
        self._contents = contents
        self._versions = versions
        self._branches = branches
        self._config = config or ConvergenceConfig()

    def _check_body(self, body: str) -> None:
        size = compute_byte_size(body)
        if size > self._config.content_max_bytes:
            raise ContentLimitError("Content body", self._config.content_max_bytes, size)

    async def _editable_branch(self, branch_id: str) -> Branch:
        branch = await self._branches.get_branch(branch_id)
        if branch is None:
            raise NotFoundError("Branch", branch_id)
        if branch.state != BranchState.DRAFT:
            raise StateError(
                "branch_draft",
                f"Content can only be changed in draft branches (branch is {branch.state})",
            )
        return branch

    async def _unique_slug(self, branch_id: str, title: str) -> str:
        base = generate_content_slug(title)
        slug = base
        for suffix in range(1, MAX_SLUG_SUFFIX + 1):
            # Soft-deleted items keep their slug reserved.
            if await self._contents.get_by_slug(branch_id, slug) is None:
                return slug
            slug = f"{base}-{suffix}"
        raise StateError("unique_slug", f"Unable to generate a unique slug for {title!r}")

    async def get_content(self, branch_id: str, content_id: str) -> ContentItem:
        item = await self._contents.get(content_id, branch_id)
        if item is None:
            raise NotFoundError("Content", content_id)
        return item

    async def list_content(self, branch_id: str) -> list[ContentItem]:
        return await self._contents.list_by_branch(branch_id)

    async def create_content(
        self,
        branch_id: str,
        *,
        title: str,
        body: str,
        actor: Actor,
        content_type: ContentType = ContentType.GUIDELINE,
        category: str | None = None,
        tags: list[str] | None = None,
        description: str | None = None,
        body_format: str = "markdown",
        change_description: str = "Initial version",
        source_content_id: str | None = None,
        source_branch_id: str | None = None,
        base_version_id: str | None = None,
    ) -> tuple[ContentItem, ContentVersion]:
        """Create a content item in a draft branch together with its first version."""
        self._check_body(body)
        branch = await self._editable_branch(branch_id)
        slug = await self._unique_slug(branch_id, title)

        item = ContentItem(
            branch_id=branch_id,
            slug=slug,
            title=title,
            content_type=content_type,
            category=category,
            tags=list(tags or []),
            description=description,
            visibility=branch.visibility,
            source_content_id=source_content_id,
            source_branch_id=source_branch_id,
            base_version_id=base_version_id,
            created_by=actor.id,
        )
        version = ContentVersion.for_body(
            body,
            content_id=item.id,
            branch_id=branch_id,
            body_format=body_format,
            metadata_snapshot=item.snapshot(),
            change_description=change_description,
            author_id=actor.id,
            author_type=actor.actor_type,
        )
        item.current_version_id = version.id

        if not await self._contents.create_with_version(item, version):
            raise StateError(
                "unique_slug", f"Content slug {slug!r} was taken concurrently"
            )
        logger.info(
            "Created content %s (%s) in branch %s", item.id, item.slug, branch_id
        )
        return item, version

    async def append_version(
        self,
        branch_id: str,
        content_id: str,
        *,
        body: str,
        actor: Actor,
        change_description: str = "",
        expected_version_id: str | None = None,
        title: str | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
        description: str | None = None,
        body_format: str | None = None,
        is_revert: bool = False,
        reverted_from_id: str | None = None,
    ) -> ContentVersion:
        """Append a version and move the item's head pointer to it.

        ``expected_version_id`` is the head the caller last saw; a mismatch, or
        any concurrent edit between read and write, raises StaleVersionError.
        Metadata arguments left as None keep their current values.
        """
        self._check_body(body)
        await self._editable_branch(branch_id)

        found = await self._contents.read_with_etag(content_id, branch_id)
        if found is None:
            raise NotFoundError("Content", content_id)
        item, etag = found
        if item.is_published:
            raise StateError("content_unpublished", "Published content cannot be modified")
        if expected_version_id is not None and expected_version_id != item.current_version_id:
            raise StaleVersionError(content_id, expected_version_id, item.current_version_id)

        parent_id = item.current_version_id
        parent_format = "markdown"
        if parent_id is not None and body_format is None:
            parent = await self._versions.get(parent_id, branch_id)
            if parent is not None:
                parent_format = parent.body_format

        item = item.model_copy(
            update={
                "title": title if title is not None else item.title,
                "category": category if category is not None else item.category,
                "tags": list(tags) if tags is not None else item.tags,
                "description": description if description is not None else item.description,
            }
        )
        version = ContentVersion.for_body(
            body,
            content_id=item.id,
            branch_id=branch_id,
            parent_version_id=parent_id,
            body_format=body_format or parent_format,
            metadata_snapshot=item.snapshot(),
            change_description=change_description,
            author_id=actor.id,
            author_type=actor.actor_type,
            is_revert=is_revert,
            reverted_from_id=reverted_from_id,
        )
        item.current_version_id = version.id

        if not await self._contents.append_version(item, etag, version):
            current = await self._contents.get(content_id, branch_id)
            raise StaleVersionError(
                content_id, parent_id, current.current_version_id if current else None
            )
        logger.debug(
            "Appended version %s to content %s (parent %s)", version.id, content_id, parent_id
        )
        return version

    async def revert(
        self,
        branch_id: str,
        content_id: str,
        target_version_id: str,
        *,
        actor: Actor,
        change_description: str | None = None,
        expected_version_id: str | None = None,
    ) -> ContentVersion:
        """Append a new version copying an earlier version's body and metadata."""
        target = await self.get_version(branch_id, target_version_id)
        if target.content_id != content_id:
            raise NotFoundError("Version", target_version_id)
        snapshot: MetadataSnapshot = target.metadata_snapshot
        return await self.append_version(
            branch_id,
            content_id,
            body=target.body,
            actor=actor,
            change_description=change_description
            or f"Reverted to version {target.id}",
            expected_version_id=expected_version_id,
            title=snapshot.title,
            category=snapshot.category,
            tags=list(snapshot.tags),
            body_format=target.body_format,
            is_revert=True,
            reverted_from_id=target.id,
        )

    async def get_version(self, branch_id: str, version_id: str) -> ContentVersion:
        version = await self._versions.get(version_id, branch_id)
        if version is None:
            raise NotFoundError("Version", version_id)
        return version

    async def list_versions(self, branch_id: str, content_id: str) -> list[ContentVersion]:
        return await self._versions.list_by_content(branch_id, content_id)

    async def verify_version(self, branch_id: str, version_id: str) -> bool:
        """Recompute a stored version's checksum and byte size."""
        version = await self.get_version(branch_id, version_id)
        valid = version.verify()
        if not valid:
            logger.error(
                "Checksum mismatch on version %s of content %s",
                version.id,
                version.content_id,
            )
        return valid

    async def verify_chain(self, branch_id: str, content_id: str) -> ChainVerification:
        """Walk head to root checking every checksum and parent link."""
        item = await self.get_content(branch_id, content_id)
        versions = {v.id: v for v in await self.list_versions(branch_id, content_id)}

        corrupt: list[str] = []
        missing: list[str] = []
        seen: set[str] = set()
        cursor = item.current_version_id
        while cursor is not None and cursor not in seen:
            version = versions.get(cursor)
            if version is None:
                missing.append(cursor)
                break
            seen.add(cursor)
            if not version.verify():
                corrupt.append(version.id)
            cursor = version.parent_version_id

        unreachable = sorted(set(versions) - seen)
        result = ChainVerification(
            content_id=content_id,
            valid=not (corrupt or missing or unreachable),
            length=len(seen),
            corrupt_version_ids=corrupt,
            missing_parent_ids=missing,
            unreachable_version_ids=unreachable,
        )
        if not result.valid:
            logger.error("Version chain of content %s failed verification: %s", content_id, result)
        return result

    async def diff_versions(
        self, branch_id: str, from_version_id: str, to_version_id: str
    ) -> ContentDiff:
        from_version = await self.get_version(branch_id, from_version_id)
        to_version = await self.get_version(branch_id, to_version_id)
        if from_version.content_id != to_version.content_id:
            raise StateError(
                "same_content", "Versions belong to different content items"
            )
        return diff_versions(
            from_version, to_version, max_lines=self._config.diff_max_lines
        )

    async def fork_content(
        self,
        branch_id: str,
        content_id: str,
        target_branch_id: str,
        *,
        actor: Actor,
    ) -> tuple[ContentItem, ContentVersion]:
        """Copy an item's current version into another draft branch.

        The copy remembers where it came from and which version it started at,
        so converging it later can tell its own edits from the source's.
        """
        source = await self.get_content(branch_id, content_id)
        if source.current_version_id is None:
            raise StateError("has_version", f"Content {content_id} has no version to fork")
        head = await self.get_version(branch_id, source.current_version_id)
        return await self.create_content(
            target_branch_id,
            title=source.title,
            body=head.body,
            actor=actor,
            content_type=source.content_type,
            category=source.category,
            tags=source.tags,
            description=source.description,
            body_format=head.body_format,
            change_description=f"Forked from {source.slug} in branch {branch_id}",
            source_content_id=source.id,
            source_branch_id=branch_id,
            base_version_id=head.id,
        )

    async def _plan_item(
        self, item: ContentItem, head: ContentVersion, partition: str
    ) -> _PlannedChange:
        if item.source_content_id is None or item.source_branch_id != partition:
            existing = await self._contents.get_by_slug(partition, item.slug)
            return _PlannedChange(item, head, ContentChange.NEW, target_item=existing)

        source = await self._contents.get(item.source_content_id, partition)
        if source is None:
            existing = await self._contents.get_by_slug(partition, item.slug)
            return _PlannedChange(item, head, ContentChange.NEW, target_item=existing)

        target_version_id = source.published_version_id or source.current_version_id
        base = (
            await self._versions.get(item.base_version_id, partition)
            if item.base_version_id
            else None
        )
        target = (
            await self._versions.get(target_version_id, partition)
            if target_version_id
            else None
        )
        if base is None or target is None:
            return _PlannedChange(item, head, ContentChange.MODIFIED, target_item=source)
        if head.checksum == base.checksum:
            return _PlannedChange(item, head, ContentChange.UNCHANGED, target_item=source)
        if target.checksum == base.checksum:
            return _PlannedChange(item, head, ContentChange.MODIFIED, target_item=source)

        merged = three_way_merge(
            base.body, target.body, head.body, max_lines=self._config.diff_max_lines
        )
        if merged.has_conflict:
            conflict = ContentConflict(
                content_id=item.id,
                slug=item.slug,
                title=item.title,
                description=(
                    f"Content {item.title!r} was modified in both the target and the branch"
                ),
                conflicting_ranges=merged.conflicting_ranges,
            )
            return _PlannedChange(
                item, head, ContentChange.MODIFIED, target_item=source, conflict=conflict
            )
        return _PlannedChange(
            item, head, ContentChange.MODIFIED, target_item=source, body=merged.body
        )

    async def _plan(self, branch_id: str, partition: str) -> list[_PlannedChange]:
        planned: list[_PlannedChange] = []
        for item in await self._contents.list_by_branch(branch_id):
            if item.current_version_id is None:
                continue
            head = await self._versions.get(item.current_version_id, branch_id)
            if head is None:
                continue
            planned.append(await self._plan_item(item, head, partition))
        return planned

    async def detect_content_conflicts(
        self, branch_id: str, target_ref: str
    ) -> list[ContentConflict]:
        """List branch items whose edits overlap edits converged into ``target_ref``.

        Reads only; nothing is written.
        """
        partition = target_content_partition(target_ref)
        return [
            step.conflict
            for step in await self._plan(branch_id, partition)
            if step.conflict is not None
        ]

    async def merge_into_target(
        self, branch_id: str, target_ref: str, actor: Actor
    ) -> ContentMergeResult:
        """Carry every live branch item into the target's content as a published version.

        Items forked from the target get a new version on their source item,
        three-way merged when both sides changed. Other items are matched by
        slug or created. Nothing is written when any item conflicts.
        """
        partition = target_content_partition(target_ref)
        planned = await self._plan(branch_id, partition)
        conflicts = [step.conflict for step in planned if step.conflict is not None]
        if conflicts:
            return ContentMergeResult(success=False, conflicts=conflicts)

        note = f"Converged from branch {branch_id}"
        changes: dict[str, ContentChange] = {}
        for step in planned:
            changes[step.item.slug] = step.change
            if step.change == ContentChange.UNCHANGED:
                continue
            if step.target_item is None:
                await self._create_in_target(step, partition, actor, note)
            else:
                await self._append_in_target(step, step.target_item.id, partition, actor, note)
        logger.info(
            "Merged %d content item(s) from branch %s into %s",
            sum(1 for c in changes.values() if c != ContentChange.UNCHANGED),
            branch_id,
            target_ref,
        )
        return ContentMergeResult(success=True, changes=changes)

    async def _create_in_target(
        self, step: _PlannedChange, partition: str, actor: Actor, note: str
    ) -> None:
        source = step.item
        item = ContentItem(
            branch_id=partition,
            slug=source.slug,
            title=source.title,
            content_type=source.content_type,
            category=source.category,
            tags=list(source.tags),
            description=source.description,
            visibility=source.visibility,
            is_published=True,
            published_at=utcnow(),
            published_by=actor.id,
            created_by=source.created_by,
        )
        version = ContentVersion.for_body(
            step.head.body,
            content_id=item.id,
            branch_id=partition,
            body_format=step.head.body_format,
            metadata_snapshot=item.snapshot(),
            change_description=note,
            author_id=actor.id,
            author_type=actor.actor_type,
        )
        item.current_version_id = item.published_version_id = version.id
        if not await self._contents.create_with_version(item, version):
            raise StateError(
                "unique_slug", f"Content slug {item.slug!r} was taken concurrently"
            )

    async def _append_in_target(
        self,
        step: _PlannedChange,
        content_id: str,
        partition: str,
        actor: Actor,
        note: str,
    ) -> None:
        body = step.body if step.body is not None else step.head.body
        self._check_body(body)
        found = await self._contents.read_with_etag(content_id, partition)
        if found is None:
            raise NotFoundError("Content", content_id)
        current, etag = found
        source = step.item
        item = current.model_copy(
            update={
                "title": source.title,
                "category": source.category,
                "tags": list(source.tags),
                "description": source.description,
                "is_published": True,
                "published_at": utcnow(),
                "published_by": actor.id,
            }
        )
        version = ContentVersion.for_body(
            body,
            content_id=item.id,
            branch_id=partition,
            parent_version_id=current.current_version_id,
            body_format=step.head.body_format,
            metadata_snapshot=item.snapshot(),
            change_description=note,
            author_id=actor.id,
            author_type=actor.actor_type,
        )
        item.current_version_id = item.published_version_id = version.id
        if not await self._contents.append_version(item, etag, version):
            raise StaleVersionError(content_id, current.current_version_id, None)

    async def publish_branch(self, branch_id: str, publisher_id: str) -> list[ContentItem]:
        """Freeze every live item in a branch at its current version."""
        now = utcnow()
        published: list[ContentItem] = []
        for item in await self._contents.list_by_branch(branch_id):
            if item.is_published:
                continue
            item.is_published = True
            item.published_version_id = item.current_version_id
            item.published_at = now
            item.published_by = publisher_id
            published.append(await self._contents.update(item, branch_id))
        logger.info("Published %d content item(s) in branch %s", len(published), branch_id)
        return published

    async def remove_branch_content(self, branch_id: str) -> int:
        """Soft-delete every live item in a branch; versions are left untouched."""
        items = await self._contents.list_by_branch(branch_id)
        for item in items:
            await self._contents.soft_delete(item, branch_id)
        return len(items)
