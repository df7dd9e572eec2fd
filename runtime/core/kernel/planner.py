"""Planner boundary: turns a goal into a plan and a candidate change.

How plans and patches are generated is owned by an external planner. The
kernel only depends on the `Planner` interface. `ReadmeTouchPlanner` is the
deterministic default: it proposes a one-line README update so the loop is
runnable end to end without a model behind it.
"""

from __future__ import annotations

import difflib
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

CHAIN_MAX = 4
ACCEPTANCE_CHECKS = ("diff applies", "tests pass or trivial", "trace rows written")
README_MARKER = "<!-- updated by nstar -->"


@dataclass(frozen=True)
class Plan:
    goal: str
    mode: str
    context_refs: tuple[str, ...] = ()
    constraints: dict[str, Any] = field(default_factory=dict)
    acceptance_checks: tuple[str, ...] = ACCEPTANCE_CHECKS

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["context"] = {"refs": list(self.context_refs)}
        del d["context_refs"]
        d["acceptance_checks"] = list(self.acceptance_checks)
        return d


@dataclass(frozen=True)
class Candidate:
    diff: str
    title: str
    estimated_cost: float
    files: tuple[str, ...] = ()


class Planner(ABC):
    @abstractmethod
    def plan(self, goal: str, mode: str, context: Mapping[str, str]) -> Plan:
        """Build a plan from the goal and the resolved context (ref -> text)."""

    @abstractmethod
    def produce(self, plan: Plan) -> Candidate:
        """Produce a candidate change (unified diff) for the plan."""


def unified_diff(path: str, old: str | None, new: str) -> str:
    """Unified diff that `git apply` accepts, including creation and missing trailing newlines."""
    old_lines = [] if old is None else old.splitlines(keepends=True)
    new_lines = new.splitlines(keepends=True)
    fromfile = "/dev/null" if old is None else f"a/{path}"
    out: list[str] = []
    for line in difflib.unified_diff(old_lines, new_lines, fromfile=fromfile, tofile=f"b/{path}"):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n\\ No newline at end of file\n")
    return "".join(out)


def changed_line_count(diff: str) -> int:
    n = 0
    for line in diff.splitlines():
        if line.startswith(("+++", "---")):
            continue
        if line.startswith(("+", "-")):
            n += 1
    return n


class ReadmeTouchPlanner(Planner):
    def __init__(self, repo_root: Path, *, estimated_cost: float = 0.02):
        self._repo_root = repo_root
        self._estimated_cost = estimated_cost

    def plan(self, goal: str, mode: str, context: Mapping[str, str]) -> Plan:
        return Plan(
            goal=goal,
            mode=mode,
            context_refs=tuple(context),
            constraints={"chain_max": CHAIN_MAX, "budget_source": "policy/cost.yaml"},
        )

    def produce(self, plan: Plan) -> Candidate:
        readme = self._repo_root / "README.md"
        if readme.exists():
            old: str | None = readme.read_text(encoding="utf-8")
            sep = "" if old.endswith("\n") or not old else "\n"
            new = f"{old}{sep}\n{README_MARKER}\n"
        else:
            old = None
            new = "# Project\n\nInitialized by nstar loop.\n"
        return Candidate(
            diff=unified_diff("README.md", old, new),
            title=f"chore: {plan.goal}",
            estimated_cost=self._estimated_cost,
            files=("README.md",),
        )
