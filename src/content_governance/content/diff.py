"""Line and metadata diffs between content versions.

The line diff is a classic LCS table followed by a backtrack from the end of
both texts. On a tie the backtrack prefers an addition over a removal, so a
replaced line shows up as ``add`` after its ``remove``. Consecutive lines of the
same kind are coalesced into ranges.

``three_way_merge`` works from difflib opcodes of each side against the common
base rather than from the LCS table.
"""

from __future__ import annotations

import json
from difflib import SequenceMatcher
from typing import TYPE_CHECKING, Any

from content_governance.errors import ContentLimitError
from content_governance.models.diff import (
    ChangeType,
    ContentDiff,
    DiffChange,
    DiffSummary,
    MergedBody,
    MetadataChange,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from content_governance.models.content import ContentVersion

DEFAULT_MAX_LINES = 20_000

_MISSING = object()


def _split(text: str) -> list[str]:
    return text.split("\n")


def _check_size(lines: list[str], side: str, max_lines: int) -> None:
    if len(lines) > max_lines:
        raise ContentLimitError(f"{side} text line count", max_lines, len(lines))


def compute_line_diff(
    old_text: str, new_text: str, *, max_lines: int = DEFAULT_MAX_LINES
) -> list[DiffChange]:
    """Return coalesced add/remove/unchanged ranges turning ``old_text`` into ``new_text``."""
    old_lines = _split(old_text)
    new_lines = _split(new_text)
    _check_size(old_lines, "old", max_lines)
    _check_size(new_lines, "new", max_lines)

    # A shared tail is always walked first by the backtrack, so it can be
    # matched directly without widening the table.
    tail = 0
    while (
        tail < min(len(old_lines), len(new_lines))
        and old_lines[-1 - tail] == new_lines[-1 - tail]
    ):
        tail += 1
    m = len(old_lines) - tail
    n = len(new_lines) - tail

    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        row, prev = dp[i], dp[i - 1]
        old_line = old_lines[i - 1]
        for j in range(1, n + 1):
            if old_line == new_lines[j - 1]:
                row[j] = prev[j - 1] + 1
            else:
                row[j] = max(prev[j], row[j - 1])

    raw: list[tuple[ChangeType, int, str]] = [
        (ChangeType.UNCHANGED, n + k + 1, new_lines[n + k]) for k in range(tail)
    ][::-1]
    i, j = m, n
    while i > 0 or j > 0:
        if i > 0 and j > 0 and old_lines[i - 1] == new_lines[j - 1]:
            raw.append((ChangeType.UNCHANGED, j, old_lines[i - 1]))
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or dp[i][j - 1] >= dp[i - 1][j]):
            raw.append((ChangeType.ADD, j, new_lines[j - 1]))
            j -= 1
        else:
            raw.append((ChangeType.REMOVE, i, old_lines[i - 1]))
            i -= 1
    raw.reverse()

    return _coalesce(raw)


def _coalesce(raw: Iterable[tuple[ChangeType, int, str]]) -> list[DiffChange]:
    changes: list[DiffChange] = []
    current: ChangeType | None = None
    start = 0
    lines: list[str] = []
    for change_type, line, content in raw:
        if change_type != current:
            if current is not None:
                changes.append(_range(current, start, lines))
            current, start, lines = change_type, line, [content]
        else:
            lines.append(content)
    if current is not None:
        changes.append(_range(current, start, lines))
    return changes


def _range(change_type: ChangeType, start: int, lines: list[str]) -> DiffChange:
    return DiffChange(
        type=change_type,
        line_start=start,
        line_end=start + len(lines) - 1,
        content="\n".join(lines),
    )


def apply_line_diff(old_text: str, changes: list[DiffChange]) -> str:
    """Rebuild the new text from ``old_text`` and its diff.

    Raises ValueError when the diff's removed and unchanged lines do not
    reproduce ``old_text``.
    """
    if _join(changes, ChangeType.ADD) != old_text:
        raise ValueError("Diff does not apply to the given text")
    return _join(changes, ChangeType.REMOVE)


def revert_line_diff(new_text: str, changes: list[DiffChange]) -> str:
    """Rebuild the old text from ``new_text`` and its diff."""
    if _join(changes, ChangeType.REMOVE) != new_text:
        raise ValueError("Diff does not apply to the given text")
    return _join(changes, ChangeType.ADD)


def _join(changes: list[DiffChange], skip: ChangeType) -> str:
    return "\n".join(change.content for change in changes if change.type != skip)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def compute_metadata_diff(
    old: Mapping[str, Any], new: Mapping[str, Any]
) -> list[MetadataChange]:
    """Report every key whose serialized value differs between the two mappings."""
    changes: list[MetadataChange] = []
    for key in dict.fromkeys([*old, *new]):
        old_value = old.get(key, _MISSING)
        new_value = new.get(key, _MISSING)
        if old_value is _MISSING or new_value is _MISSING or _canonical(
            old_value
        ) != _canonical(new_value):
            changes.append(
                MetadataChange(
                    field=key,
                    old_value=None if old_value is _MISSING else old_value,
                    new_value=None if new_value is _MISSING else new_value,
                )
            )
    return changes


def diff_versions(
    from_version: ContentVersion,
    to_version: ContentVersion,
    *,
    max_lines: int = DEFAULT_MAX_LINES,
) -> ContentDiff:
    """Compare two versions of the same content item."""
    body_changes = compute_line_diff(
        from_version.body, to_version.body, max_lines=max_lines
    )
    metadata_changes = compute_metadata_diff(
        from_version.metadata_snapshot.model_dump(mode="json"),
        to_version.metadata_snapshot.model_dump(mode="json"),
    )
    return ContentDiff(
        content_id=to_version.content_id,
        from_version_id=from_version.id,
        to_version_id=to_version.id,
        body_changes=body_changes,
        metadata_changes=metadata_changes,
        summary=DiffSummary(
            additions=sum(1 for c in body_changes if c.type == ChangeType.ADD),
            deletions=sum(1 for c in body_changes if c.type == ChangeType.REMOVE),
            modifications=len(metadata_changes),
        ),
    )


# (base_start, base_end, replacement): base lines [start, end) become replacement.
Hunk = tuple[int, int, list[str]]


def _hunks(base: list[str], other: list[str]) -> list[Hunk]:
    matcher = SequenceMatcher(None, base, other, autojunk=False)
    return [
        (i1, i2, other[j1:j2])
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def _touches(a: Hunk, b: Hunk) -> bool:
    # Adjacent edits conflict too: their relative order is ambiguous.
    return a[0] <= b[1] and b[0] <= a[1]


def three_way_merge(
    base: str, target: str, branch: str, *, max_lines: int = DEFAULT_MAX_LINES
) -> MergedBody:
    """Combine the target's and the branch's edits of a common base body.

    When only one side changed, that side wins. When both changed, edits to
    separate line ranges are applied together and overlapping edits are a
    conflict, reported as base line ranges (0-based, end exclusive).
    """
    if target == branch or base == branch:
        return MergedBody(body=target)
    if base == target:
        return MergedBody(body=branch)

    base_lines = _split(base)
    target_lines = _split(target)
    branch_lines = _split(branch)
    _check_size(base_lines, "base", max_lines)
    _check_size(target_lines, "target", max_lines)
    _check_size(branch_lines, "branch", max_lines)

    target_hunks = _hunks(base_lines, target_lines)
    branch_hunks = [h for h in _hunks(base_lines, branch_lines) if h not in target_hunks]
    conflicts = sorted(
        {
            (min(a[0], b[0]), max(a[1], b[1]))
            for a in target_hunks
            for b in branch_hunks
            if _touches(a, b)
        }
    )
    if conflicts:
        return MergedBody(conflicting_ranges=conflicts)

    merged = list(base_lines)
    for start, end, replacement in sorted(
        [*target_hunks, *branch_hunks], key=lambda h: (h[0], h[1]), reverse=True
    ):
        merged[start:end] = replacement
    return MergedBody(body="\n".join(merged))
