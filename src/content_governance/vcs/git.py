"""``VersionControl`` backed by the git CLI against a bare content repository.

Merges never touch a working tree: ``git merge-tree --write-tree`` computes the
result, ``commit-tree`` records it, and ``update-ref`` moves the target only if
it still points at the head the merge was computed against.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from content_governance.errors import VersionControlError
from content_governance.models.convergence import ConflictDetail, ConflictType
from content_governance.vcs import ChangeKind, FileChange, Mergeability

if TYPE_CHECKING:
    from content_governance.config import GitConfig

logger = logging.getLogger(__name__)

# merge-tree exits 1 when the merge has conflicts.
_MERGE_CONFLICT_EXIT = 1

_STATUS_KINDS = {
    "A": ChangeKind.ADDED,
    "M": ChangeKind.MODIFIED,
    "T": ChangeKind.MODIFIED,
    "D": ChangeKind.DELETED,
    "R": ChangeKind.RENAMED,
    "C": ChangeKind.ADDED,
}


@dataclass(frozen=True)
class _GitResult:
    returncode: int
    stdout: str
    stderr: str


def qualify_ref(ref: str) -> str:
    """Expand a short branch name to ``refs/heads/...``."""
    return ref if ref.startswith("refs/") else f"refs/heads/{ref}"


def parse_name_status(output: str) -> list[FileChange]:
    """Parse ``git diff --name-status -z`` output."""
    tokens = output.split("\0")
    changes: list[FileChange] = []
    index = 0
    while index < len(tokens) and tokens[index]:
        code = tokens[index][0]
        kind = _STATUS_KINDS.get(code, ChangeKind.MODIFIED)
        if code in ("R", "C"):
            old_path, path = tokens[index + 1], tokens[index + 2]
            index += 3
        else:
            old_path, path = None, tokens[index + 1]
            index += 2
        changes.append(
            FileChange(
                path=path,
                status=kind,
                old_path=old_path if kind == ChangeKind.RENAMED else None,
            )
        )
    return changes


class GitVersionControl:
    """Run git plumbing commands in ``config.repository_path``."""

    def __init__(self, config: GitConfig) -> None:
        if not config.repository_path:
            raise VersionControlError("GIT_REPOSITORY_PATH is not set")
        self._path = config.repository_path
        self._binary = config.binary

    async def _git(
        self,
        *args: str,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> _GitResult:
        command = (self._binary, "-C", self._path, *args)
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
        )
        stdout, stderr = await process.communicate()
        result = _GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            raise VersionControlError(
                f"git {args[0]} failed with exit code {result.returncode}",
                command=command,
                stderr=result.stderr.strip(),
            )
        return result

    async def get_head_commit(self, ref: str) -> str:
        result = await self._git("rev-parse", "--verify", f"{qualify_ref(ref)}^{{commit}}")
        return result.stdout.strip()

    async def get_merge_base(self, ref_a: str, ref_b: str) -> str:
        result = await self._git("merge-base", qualify_ref(ref_a), qualify_ref(ref_b))
        return result.stdout.strip()

    async def get_changed_files(
        self, branch_ref: str, target_ref: str
    ) -> list[FileChange]:
        result = await self._git(
            "diff",
            "--name-status",
            "-z",
            "-M",
            f"{qualify_ref(target_ref)}...{qualify_ref(branch_ref)}",
        )
        return parse_name_status(result.stdout)

    async def get_changed_files_since_commit(
        self, ref: str, commit: str
    ) -> list[FileChange]:
        result = await self._git(
            "diff", "--name-status", "-z", "-M", commit, qualify_ref(ref)
        )
        return parse_name_status(result.stdout)

    async def check_mergeability(
        self, branch_ref: str, target_ref: str
    ) -> Mergeability:
        result = await self._git(
            "merge-tree",
            "--write-tree",
            "--name-only",
            "--no-messages",
            qualify_ref(target_ref),
            qualify_ref(branch_ref),
            check=False,
        )
        if result.returncode == 0:
            return Mergeability(can_merge=True)
        if result.returncode != _MERGE_CONFLICT_EXIT:
            raise VersionControlError(
                f"git merge-tree failed with exit code {result.returncode}",
                stderr=result.stderr.strip(),
            )
        # First line is the conflicted tree id, then one path per line.
        paths = [line for line in result.stdout.splitlines()[1:] if line]
        return Mergeability(
            can_merge=False,
            conflicts=[
                ConflictDetail(
                    path=path,
                    type=ConflictType.CONTENT,
                    description=f'File "{path}" cannot be merged cleanly into {target_ref}',
                )
                for path in dict.fromkeys(paths)
            ],
        )

    async def merge_branch(
        self, branch_ref: str, target_ref: str, *, message: str, author: str
    ) -> str:
        target_head = await self.get_head_commit(target_ref)
        branch_head = await self.get_head_commit(branch_ref)

        tree = await self._git(
            "merge-tree", "--write-tree", "--no-messages", target_head, branch_head,
            check=False,
        )
        if tree.returncode != 0:
            raise VersionControlError(
                f"Cannot merge {branch_ref} into {target_ref}: merge has conflicts",
                stderr=tree.stderr.strip(),
            )
        tree_id = tree.stdout.splitlines()[0].strip()

        identity = {
            "GIT_AUTHOR_NAME": author,
            "GIT_AUTHOR_EMAIL": f"{author}@content-governance",
            "GIT_COMMITTER_NAME": author,
            "GIT_COMMITTER_EMAIL": f"{author}@content-governance",
        }
        commit = await self._git(
            "commit-tree", tree_id, "-p", target_head, "-p", branch_head, "-m", message,
            env=identity,
        )
        merge_commit = commit.stdout.strip()

        # Compare-and-swap: fails if the target moved since target_head was read.
        await self._git("update-ref", qualify_ref(target_ref), merge_commit, target_head)
        logger.info(
            "Merged %s into %s: %s -> %s",
            branch_ref,
            target_ref,
            target_head[:12],
            merge_commit[:12],
        )
        return merge_commit

    async def reset_to_commit(self, ref: str, commit: str) -> None:
        await self._git("update-ref", qualify_ref(ref), commit)
        logger.warning("Reset %s to %s", ref, commit[:12])

    async def create_ref(self, ref: str, start_point: str) -> str:
        commit = await self.get_head_commit(start_point)
        # An empty old value requires that the ref does not exist yet.
        await self._git("update-ref", qualify_ref(ref), commit, "")
        return commit
