"""Fast-forward the working tree from its upstream branch."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateOutcome:
    ahead: int = 0
    behind: int = 0
    updated: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GitUpdater:
    """`git fetch` then `git pull --ff-only` when the branch is behind its upstream.

    Never raises: a repo without an upstream, a network failure or a diverged
    branch is reported in the outcome and leaves the tree untouched.
    """

    def __init__(self, repo_root: Path, *, timeout_seconds: float = 120.0):
        self._repo_root = repo_root
        self._timeout = timeout_seconds

    def pull(self) -> UpdateOutcome:
        try:
            self._git("fetch", "--quiet")
            counts = self._git("rev-list", "--left-right", "--count", "HEAD...@{upstream}").split()
            ahead, behind = int(counts[0]), int(counts[1])
            if behind > 0:
                self._git("pull", "--ff-only", "--quiet")
        except (OSError, subprocess.SubprocessError, ValueError, IndexError) as e:
            logger.warning(f"update skipped: {e}", extra={"event": "update_skipped"})
            return UpdateOutcome(error=str(e))
        if behind > 0:
            logger.info("fast-forwarded", extra={"event": "update_applied", "details": {"behind": behind}})
        return UpdateOutcome(ahead=ahead, behind=behind, updated=behind > 0)

    def _git(self, *args: str) -> str:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(self._repo_root),
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=True,
        )
        return proc.stdout
