"""
Change Source - version-control change enumeration.

GitChangeSource shells out to the git CLI through asyncio subprocesses so
enumeration never blocks the learner's event loop. Any object exposing the
same three coroutines can stand in for it (tests use an in-memory fake).
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..core.models import ChangeRecord, ChangeType, CommitInfo
from ..errors import ChangeSourceError

logger = logging.getLogger(__name__)

_STATUS_TYPES = {
    "A": ChangeType.ADDED,
    "M": ChangeType.MODIFIED,
    "D": ChangeType.DELETED,
    "R": ChangeType.RENAMED,
}


def parse_name_status(output: str) -> List[ChangeRecord]:
    """
    Parse `git diff --name-status` output.

    Renames are reported as "R<score>\\told\\tnew"; the new path becomes
    `path` and the old one `old_path`. Statuses other than A/M/D/R
    (copies, type changes) are skipped.
    """
    changes: List[ChangeRecord] = []
    for line in output.splitlines():
        parts = line.strip().split("\t")
        if len(parts) < 2 or not parts[0]:
            continue

        change_type = _STATUS_TYPES.get(parts[0][0])
        if change_type is None:
            continue

        if change_type is ChangeType.RENAMED and len(parts) >= 3:
            changes.append(ChangeRecord(change_type, path=parts[2], old_path=parts[1]))
        else:
            changes.append(ChangeRecord(change_type, path=parts[1]))
    return changes


class GitChangeSource:
    """
    Enumerates changes from a git working tree.

    Example:
        source = GitChangeSource("/work/my-repo")
        changes = await source.list_changes(since="main")
        commit = await source.get_commit_info()
    """

    def __init__(self, repo_path: str, git_binary: str = "git"):
        self.repo_path = str(Path(repo_path).expanduser().resolve())
        self.git_binary = git_binary

    async def _git(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary,
                *args,
                cwd=self.repo_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ChangeSourceError(f"git executable not found: {self.git_binary}") from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise ChangeSourceError(f"git {' '.join(args)} failed: {message[:200]}")
        return stdout.decode("utf-8", errors="replace")

    async def is_repository(self) -> bool:
        try:
            out = await self._git("rev-parse", "--is-inside-work-tree")
        except ChangeSourceError:
            return False
        return out.strip() == "true"

    async def list_changes(self, since: Optional[str] = None) -> List[ChangeRecord]:
        """Changes between `since` and HEAD, or uncommitted changes if no ref is given."""
        if not since:
            return await self.list_uncommitted_changes()
        output = await self._git("diff", "--name-status", f"{since}...HEAD")
        changes = parse_name_status(output)
        logger.debug(f"{len(changes)} changes since {since} in {self.repo_path}")
        return changes

    async def list_uncommitted_changes(self) -> List[ChangeRecord]:
        """Staged, unstaged, then untracked changes; first report of a path wins."""
        staged = parse_name_status(await self._git("diff", "--name-status", "--cached"))
        unstaged = parse_name_status(await self._git("diff", "--name-status"))
        untracked_out = await self._git("ls-files", "--others", "--exclude-standard")
        untracked = [
            ChangeRecord(ChangeType.ADDED, path=line.strip())
            for line in untracked_out.splitlines()
            if line.strip()
        ]

        unique: Dict[str, ChangeRecord] = {}
        for change in staged + unstaged + untracked:
            unique.setdefault(change.path, change)
        return list(unique.values())

    async def get_commit_info(self, ref: str = "HEAD") -> Optional[CommitInfo]:
        """Metadata for `ref`, or None when the repository has no commits yet."""
        try:
            output = await self._git(
                "log", "-1", "--name-only", "--pretty=format:%H%n%s%n%an%n%ae%n%ct", ref
            )
        except ChangeSourceError as e:
            logger.debug(f"No commit info for {ref}: {e}")
            return None

        lines = output.splitlines()
        if len(lines) < 5:
            return None
        return CommitInfo(
            id=lines[0],
            message=lines[1],
            author=lines[2],
            email=lines[3],
            timestamp=datetime.fromtimestamp(int(lines[4]), tz=timezone.utc),
            files_changed=[line for line in lines[5:] if line.strip()],
        )


def changes_for_paths(paths: Sequence[str], commit: Optional[CommitInfo] = None) -> List[ChangeRecord]:
    """Synthetic `modified` records for queued file paths."""
    return [
        ChangeRecord(
            change_type=ChangeType.MODIFIED,
            path=path,
            commit_id=commit.id if commit else None,
            commit_message=commit.message if commit else None,
            timestamp=commit.timestamp if commit else None,
        )
        for path in paths
    ]
