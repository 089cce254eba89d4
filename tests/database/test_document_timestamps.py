"""Tests for stored timestamp formatting across document models."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from content_governance.models.branch import Branch
from content_governance.models.content import ContentItem, ContentVersion, MetadataSnapshot
from content_governance.models.convergence import ConvergenceOperation, TargetLock

# A whole second, which plain isoformat() renders without a fraction.
WHOLE_SECOND = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
FIXED_WIDTH = "2025-06-01T12:00:00.000000+00:00"


@pytest.mark.unit
class TestDocumentTimestamps:
    """Every stored timestamp renders at microsecond width."""

    def test_version_timestamp(self) -> None:
        version = ContentVersion.for_body(
            "body",
            content_id="content-1",
            branch_id="branch-1",
            metadata_snapshot=MetadataSnapshot(title="Style"),
            author_id="owner-1",
            version_timestamp=WHOLE_SECOND,
        )

        assert version.model_dump(mode="json")["version_timestamp"] == FIXED_WIDTH

    def test_lock_acquired_at(self) -> None:
        lock = TargetLock(
            target_ref="main", holder_id="op1", branch_id="branch-1", acquired_at=WHOLE_SECOND
        )

        assert lock.model_dump(mode="json")["acquired_at"] == FIXED_WIDTH

    def test_operation_run_timestamps(self) -> None:
        operation = ConvergenceOperation(
            branch_id="branch-1",
            publisher_id="publisher-1",
            target_ref="main",
            started_at=WHOLE_SECOND,
            completed_at=WHOLE_SECOND,
        )

        dumped = operation.model_dump(mode="json")
        assert dumped["started_at"] == FIXED_WIDTH
        assert dumped["completed_at"] == FIXED_WIDTH

    def test_unset_optional_timestamps_stay_none(self) -> None:
        operation = ConvergenceOperation(
            branch_id="branch-1", publisher_id="publisher-1", target_ref="main"
        )

        assert operation.model_dump(mode="json")["completed_at"] is None

    def test_branch_and_content_lifecycle(self) -> None:
        branch = Branch(name="Q3", slug="q3", owner_id="owner-1", approved_at=WHOLE_SECOND)
        item = ContentItem(
            branch_id="branch-1", slug="style", title="Style", published_at=WHOLE_SECOND
        )

        assert branch.model_dump(mode="json")["approved_at"] == FIXED_WIDTH
        assert item.model_dump(mode="json")["published_at"] == FIXED_WIDTH
