"""Apply mechanism for committed candidate changes."""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ApplyOutcome:
    ok: bool
    stdout: str = ""
    stderr: str = ""


class PatchApplier(ABC):
    @abstractmethod
    def apply(self, diff: str) -> ApplyOutcome:
        """Apply a unified diff. Failures are reported in the outcome, not raised."""


class GitPatchApplier(PatchApplier):
    def __init__(self, repo_root: Path, *, timeout_seconds: float = 60.0):
        self._repo_root = repo_root
        self._timeout = timeout_seconds

    def apply(self, diff: str) -> ApplyOutcome:
        try:
            proc = subprocess.run(
                ["git", "apply", "--whitespace=fix", "-"],
                input=diff,
                cwd=str(self._repo_root),
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return ApplyOutcome(ok=False, stderr=str(e))
        return ApplyOutcome(ok=proc.returncode == 0, stdout=proc.stdout, stderr=proc.stderr)
