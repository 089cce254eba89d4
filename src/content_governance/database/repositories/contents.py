"""Repositories for the contents container (partitioned by /branch_id).

Content items and their versions share the branch partition: appending a
version and moving the item's head pointer is one transactional batch guarded
by the item's etag, so two concurrent edits can never fork the chain.
"""

from __future__ import annotations

from content_governance.database.repositories.base import BaseRepository
from content_governance.models.base import utcnow
from content_governance.models.content import ContentItem, ContentVersion, SlugReservation


class ContentRepository(BaseRepository[ContentItem]):
    container_name = "contents"
    model_class = ContentItem

    async def list_by_branch(self, branch_id: str) -> list[ContentItem]:
        """Fetch live content items in a branch, ordered by slug."""
        return await self.query(
            "SELECT * FROM c WHERE c.doc_type = 'content'"
            " AND c.branch_id = @branch_id"
            " AND NOT IS_DEFINED(c.deleted_at)"
            " ORDER BY c.slug ASC",
            [{"name": "@branch_id", "value": branch_id}],
            partition_key=branch_id,
        )

    async def get_by_slug(self, branch_id: str, slug: str) -> ContentItem | None:
        """Look up an item by slug, including soft-deleted ones (slugs stay reserved)."""
        results = await self.query(
            "SELECT * FROM c WHERE c.doc_type = 'content'"
            " AND c.branch_id = @branch_id AND c.slug = @slug",
            [
                {"name": "@branch_id", "value": branch_id},
                {"name": "@slug", "value": slug},
            ],
            partition_key=branch_id,
        )
        return results[0] if results else None

    async def create_with_version(
        self, item: ContentItem, version: ContentVersion
    ) -> bool:
        """Insert a new item, its slug reservation and its initial version together.

        Returns False when the slug is already reserved in the branch.
        """
        return await self.execute_batch(
            [
                ("create", (self.to_body(SlugReservation.for_item(item)),)),
                ("create", (self.to_body(item),)),
                ("create", (self.to_body(version),)),
            ],
            partition_key=item.branch_id,
        )

    async def append_version(
        self, item: ContentItem, etag: str, version: ContentVersion
    ) -> bool:
        """Insert ``version`` and replace ``item`` only if the item still has ``etag``."""
        item.updated_at = utcnow()
        return await self.execute_batch(
            [
                ("create", (self.to_body(version),)),
                ("replace", (item.id, self.to_body(item)), {"if_match_etag": etag}),
            ],
            partition_key=item.branch_id,
        )


class VersionRepository(BaseRepository[ContentVersion]):
    container_name = "contents"
    model_class = ContentVersion

    async def list_by_content(
        self, branch_id: str, content_id: str
    ) -> list[ContentVersion]:
        """Fetch a content item's versions, newest first."""
        return await self.query(
            "SELECT * FROM c WHERE c.doc_type = 'version'"
            " AND c.content_id = @content_id"
            " ORDER BY c.version_timestamp DESC",
            [{"name": "@content_id", "value": content_id}],
            partition_key=branch_id,
        )
