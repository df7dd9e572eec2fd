from __future__ import annotations

import json
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from config.settings import KernelConfig
from kernel.apply import ApplyOutcome, GitPatchApplier, PatchApplier
from kernel.evidence import EvidenceCollector
from kernel.loop import DECISION_COMMIT, DECISION_DEFER, DECISION_ERROR, KernelRunLoop
from kernel.planner import Candidate, Plan, Planner, ReadmeTouchPlanner, changed_line_count, unified_diff
from policy.gate import PolicyEngine
from storage.jsonl import JsonlIntentLog, JsonlTraceLedger
from storage.paste import FileContextStore

FAILING_TESTS = (sys.executable, "-c", "raise SystemExit(1)")


class RecordingApplier(PatchApplier):
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.diffs: list[str] = []

    def apply(self, diff: str) -> ApplyOutcome:
        self.diffs.append(diff)
        return ApplyOutcome(ok=self.ok, stderr="" if self.ok else "patch does not apply")


class ExplodingPlanner(Planner):
    def plan(self, goal, mode, context):
        return Plan(goal=goal, mode=mode)

    def produce(self, plan):
        raise RuntimeError("planner offline")


def _loop(
    tmp_path: Path,
    policy: PolicyEngine,
    ledger: JsonlTraceLedger,
    intents: JsonlIntentLog,
    context_store: FileContextStore,
    *,
    applier: PatchApplier | None = None,
    planner: Planner | None = None,
    test_command: tuple[str, ...] = (),
    ops_dir: Path | None = None,
) -> KernelRunLoop:
    kernel_cfg = KernelConfig(test_command=test_command)
    return KernelRunLoop(
        policy=policy,
        ledger=ledger,
        context_store=context_store,
        intents=intents,
        planner=planner or ReadmeTouchPlanner(tmp_path, estimated_cost=kernel_cfg.estimated_cost),
        evidence=EvidenceCollector(policy=policy, kernel=kernel_cfg, repo_root=tmp_path),
        applier=applier or RecordingApplier(),
        ops_dir=ops_dir or tmp_path / "ops",
    )


@pytest.mark.asyncio
async def test_passing_gate_commits_and_writes_artifacts(tmp_path, policy, ledger, intents, context_store) -> None:
    applier = RecordingApplier()
    loop = _loop(tmp_path, policy, ledger, intents, context_store, applier=applier)

    result = await loop.run("Tidy docs", "safe")

    assert result.decision == DECISION_COMMIT
    assert result.gamma == 0.75
    assert result.evidence == {"tests_pass": 1, "retrieval_cited": 0, "cost_ok": 1, "diff_tiny": 1}
    assert result.applied is True
    assert len(applier.diffs) == 1 and "+++ b/README.md" in applier.diffs[0]
    plan = json.loads((tmp_path / "ops" / "LAST_PLAN.json").read_text(encoding="utf-8"))
    assert plan["goal"] == "Tidy docs"
    assert "[ ] Retrieval cited" in (tmp_path / "ops" / "LAST_VERIFY.md").read_text(encoding="utf-8")
    assert intents.tail(10) == []


@pytest.mark.asyncio
async def test_every_transition_is_traced_with_run_id(tmp_path, policy, ledger, intents, context_store) -> None:
    result = await _loop(tmp_path, policy, ledger, intents, context_store).run("Tidy docs", "fast")

    steps = [(e.phase, e.step) for e in ledger.for_run(result.run_id)]
    assert steps == [
        ("plan", "start"),
        ("evaluate", "context"),
        ("plan", "plan"),
        ("produce", "candidate"),
        ("validate", "evidence"),
        ("gate", "gamma"),
        ("patch", "apply"),
        ("done", "end"),
    ]
    assert all(e.field_value("mode") == "fast" for e in ledger.for_run(result.run_id))
    assert ":" in result.run_id


@pytest.mark.asyncio
async def test_failing_gate_defers_with_intent(tmp_path, policy, ledger, intents, context_store) -> None:
    applier = RecordingApplier()
    loop = _loop(tmp_path, policy, ledger, intents, context_store, applier=applier, test_command=FAILING_TESTS)

    result = await loop.run("Refactor core", "fast")

    assert result.decision == DECISION_DEFER
    assert result.gamma == 0.35
    assert applier.diffs == []
    [intent] = intents.tail(10)
    assert intent["title"] == "chore: Refactor core (γ=0.35)"
    assert intent["branch"].startswith("pipe/")
    assert intent["branch"] == result.intent_branch
    gate = ledger.tail(1, phase="gate")[0]
    assert gate.ok is False
    assert gate.note == "0.35<0.5"
    assert ledger.tail(1, phase="intent")[0].step == "request_pr"


@pytest.mark.asyncio
async def test_context_refs_raise_retrieval_signal(tmp_path, policy, ledger, intents, context_store) -> None:
    ref = context_store.ingest("Background: keep the README short.")
    result = await _loop(tmp_path, policy, ledger, intents, context_store).run(
        "Tidy docs", "safe", [ref.uri, "ctx://paste/0123456789ab"]
    )
    assert result.evidence["retrieval_cited"] == 1
    assert result.gamma == 1.0
    assert result.unresolved_refs == ["ctx://paste/0123456789ab"]
    plan = json.loads((tmp_path / "ops" / "LAST_PLAN.json").read_text(encoding="utf-8"))
    assert plan["context"]["refs"] == [ref.uri]


@pytest.mark.asyncio
async def test_apply_failure_is_logged_apart_from_gate(tmp_path, policy, ledger, intents, context_store) -> None:
    loop = _loop(tmp_path, policy, ledger, intents, context_store, applier=RecordingApplier(ok=False))
    result = await loop.run("Tidy docs", "fast")

    assert result.decision == DECISION_COMMIT
    assert result.applied is False
    assert result.apply_error == "patch does not apply"
    assert ledger.tail(1, phase="gate")[0].ok is True
    assert ledger.tail(1, phase="patch")[0].ok is False
    assert not (tmp_path / "ops" / "LAST_PLAN.json").exists()


@pytest.mark.asyncio
async def test_unwritable_artifacts_still_trace_the_applied_patch(tmp_path, policy, ledger, intents, context_store) -> None:
    blocked = tmp_path / "not_a_dir"
    blocked.write_text("", encoding="utf-8")
    applier = RecordingApplier()
    loop = _loop(tmp_path, policy, ledger, intents, context_store, applier=applier, ops_dir=blocked)

    result = await loop.run("Tidy docs", "safe")

    assert result.decision == DECISION_COMMIT
    assert result.applied is True
    assert len(applier.diffs) == 1
    steps = [(e.phase, e.step, e.ok) for e in ledger.for_run(result.run_id)]
    assert steps[-2:] == [("patch", "apply", True), ("done", "end", True)]


@pytest.mark.asyncio
async def test_phase_failure_ends_in_error(tmp_path, policy, ledger, intents, context_store) -> None:
    loop = _loop(tmp_path, policy, ledger, intents, context_store, planner=ExplodingPlanner())
    result = await loop.run("Anything", "fast")

    assert result.decision == DECISION_ERROR
    assert result.scheduler["status"] == "blocked"
    assert "planner offline" in result.note
    steps = [(e.phase, e.step, e.ok) for e in ledger.for_run(result.run_id)]
    assert ("produce", "error", False) in steps
    assert steps[-1] == ("done", "end", False)
    assert ledger.tail(1, phase="gate") == []


def test_unified_diff_creation_and_append() -> None:
    created = unified_diff("README.md", None, "# Project\n")
    assert created.startswith("--- /dev/null\n+++ b/README.md\n")
    appended = unified_diff("README.md", "a", "a\nb\n")
    assert "\\ No newline at end of file" in appended
    assert changed_line_count(appended) == 3


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_applier_applies_planner_diff(tmp_path: Path) -> None:
    subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
    (tmp_path / "README.md").write_text("# Demo\n", encoding="utf-8")
    planner = ReadmeTouchPlanner(tmp_path)
    cand: Candidate = planner.produce(planner.plan("touch", "fast", {}))

    outcome = GitPatchApplier(tmp_path).apply(cand.diff)

    assert outcome.ok, outcome.stderr
    assert (tmp_path / "README.md").read_text(encoding="utf-8").endswith("<!-- updated by nstar -->\n")
    assert not GitPatchApplier(tmp_path).apply("not a diff").ok
