"""Content authoring: version history, diffs and convergence into targets."""

from content_governance.content.diff import (
    apply_line_diff,
    compute_line_diff,
    compute_metadata_diff,
    revert_line_diff,
    three_way_merge,
)
from content_governance.content.versions import (
    ChainVerification,
    ContentVersionStore,
    target_content_partition,
)

__all__ = [
    "ChainVerification",
    "ContentVersionStore",
    "apply_line_diff",
    "compute_line_diff",
    "compute_metadata_diff",
    "revert_line_diff",
    "target_content_partition",
    "three_way_merge",
]
