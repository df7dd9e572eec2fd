"""Evidence collection for the quality gate.

Each signal is a 0/1 answer from an external check:
- tests_pass:       the configured test command exits 0 (no command = trivially passing)
- retrieval_cited:  at least one context reference resolved
- cost_ok:          the candidate's estimated cost is within the per-run ceiling
- diff_tiny:        the candidate changes at most `diff_tiny_max_lines` lines
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Mapping

from config.settings import KernelConfig
from kernel.planner import Candidate, changed_line_count
from policy.gate import GammaEvidence, PolicyEngine

logger = logging.getLogger(__name__)


class EvidenceCollector:
    def __init__(self, *, policy: PolicyEngine, kernel: KernelConfig, repo_root: Path):
        self._policy = policy
        self._kernel = kernel
        self._repo_root = repo_root

    def collect(self, candidate: Candidate, resolved_context: Mapping[str, str]) -> GammaEvidence:
        return GammaEvidence(
            tests_pass=self.tests_pass(),
            retrieval_cited=len(resolved_context) > 0,
            cost_ok=self._policy.cost_gate(candidate.estimated_cost).ok,
            diff_tiny=changed_line_count(candidate.diff) <= self._kernel.diff_tiny_max_lines,
        )

    def tests_pass(self) -> bool:
        cmd = self._kernel.test_command
        if not cmd:
            return True
        try:
            proc = subprocess.run(
                list(cmd),
                cwd=str(self._repo_root),
                capture_output=True,
                text=True,
                timeout=self._kernel.test_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            logger.warning("test command timed out", extra={"event": "tests_timeout"})
            return False
        except OSError as e:
            logger.warning(f"test command could not start: {e}", extra={"event": "tests_unavailable"})
            return False
        if proc.returncode != 0:
            logger.info(f"test command exited {proc.returncode}", extra={"event": "tests_failed"})
        return proc.returncode == 0
