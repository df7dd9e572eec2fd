"""Kernel run loop: one bounded pass from goal to Commit or Defer.

    start -> evaluate -> plan -> produce -> validate -> gate -> commit | defer -> done

The four middle phases run as a linear TaskGraph on the Scheduler. Every
transition writes exactly one TraceEvent tagged with the run id (and the mode
in `extra`), so `ledger.for_run(run_id)` reconstructs the whole run. The gate
decision is written before any side effect. An apply failure after a passing
gate is logged as `patch/apply ok=false`, never as a gate failure.

The loop does not retry. Continuous operation comes from re-invoking it
(see `kernel.watch.WatchLoop`).
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from errors import ContractViolationError, NotFoundError
from kernel.apply import PatchApplier
from kernel.evidence import EvidenceCollector
from kernel.planner import Candidate, Plan, Planner, changed_line_count
from policy.gate import GammaEvidence, GateDecision, PolicyEngine
from scheduler.graph import TaskGraph
from scheduler.runner import Scheduler, SchedulerEvent
from storage.interfaces import CONTEXT_URI_PREFIX, ContextStore, Intent, IntentLog, TraceEvent, TraceLedger
from utils import current_user, epoch_ms, to_base36

logger = logging.getLogger(__name__)

DECISION_COMMIT = "COMMIT"
DECISION_DEFER = "DEFER"
DECISION_ERROR = "ERROR"

INTENT_BODY = "Auto PR intent from nstar loop."


def new_run_id() -> str:
    return f"{to_base36(epoch_ms())}:{current_user()}"


@dataclass(frozen=True)
class ContextResolution:
    resolved: dict[str, str]
    unresolved: list[str]


@dataclass
class RunResult:
    run_id: str
    goal: str
    mode: str
    decision: str
    ctx_refs: list[str]
    gamma: float | None = None
    threshold: float | None = None
    passed: bool | None = None
    cost: dict[str, Any] | None = None
    evidence: dict[str, int] | None = None
    applied: bool | None = None
    apply_error: str | None = None
    intent_branch: str | None = None
    unresolved_refs: list[str] = field(default_factory=list)
    scheduler: dict[str, Any] | None = None
    note: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class KernelRunLoop:
    def __init__(
        self,
        *,
        policy: PolicyEngine,
        ledger: TraceLedger,
        context_store: ContextStore,
        intents: IntentLog,
        planner: Planner,
        evidence: EvidenceCollector,
        applier: PatchApplier,
        ops_dir: Path | None = None,
    ):
        self._policy = policy
        self._ledger = ledger
        self._ctx = context_store
        self._intents = intents
        self._planner = planner
        self._evidence = evidence
        self._applier = applier
        self._ops_dir = ops_dir

    async def run(self, goal: str, mode: str = "fast", ctx_refs: Iterable[str] = ()) -> RunResult:
        run_id = new_run_id()
        refs = [r for r in ctx_refs if r]
        result = RunResult(run_id=run_id, goal=goal, mode=mode, decision=DECISION_ERROR, ctx_refs=refs)

        def trace(phase: str, step: str, *, ok: bool = True, note: str | None = None, **extra: Any) -> None:
            self._ledger.append(TraceEvent(run_id=run_id, phase=phase, step=step, ok=ok, note=note, extra={"mode": mode, **extra}))

        trace("plan", "start", note=goal, ctx_refs=refs)
        logger.info("kernel_run_start", extra={"event": "kernel_run_start", "run_id": run_id, "mode": mode})

        graph = TaskGraph()
        graph.add_task("evaluate", lambda _deps: self._resolve_context(refs))
        graph.add_task("plan", lambda deps: self._planner.plan(goal, mode, deps["evaluate"].resolved), deps=["evaluate"])
        graph.add_task("produce", lambda deps: self._planner.produce(deps["plan"]), deps=["plan"])
        graph.add_task(
            "validate",
            lambda deps: asyncio.to_thread(self._evidence.collect, deps["produce"], deps["evaluate"].resolved),
            deps=["evaluate", "produce"],
        )

        scheduler = Scheduler(graph, run_id=run_id, name="kernel")
        scheduler.on_event(lambda ev: self._trace_phase(ev, trace))
        outcome = await scheduler.run()
        result.scheduler = outcome.as_dict()

        if not outcome.ok:
            result.note = f"phases {outcome.status}: " + ", ".join(outcome.errors.values() or outcome.remaining)
            trace("done", "end", ok=False, note=result.note, decision=DECISION_ERROR)
            return result

        resolution: ContextResolution = outcome.results["evaluate"]
        plan: Plan = outcome.results["plan"]
        candidate: Candidate = outcome.results["produce"]
        evidence: GammaEvidence = outcome.results["validate"]
        result.unresolved_refs = resolution.unresolved
        result.evidence = evidence.as_dict()

        decision = self._policy.decide(evidence, mode=mode, estimated_cost=candidate.estimated_cost)
        result.gamma = decision.gamma
        result.threshold = decision.threshold
        result.passed = decision.passed
        result.cost = decision.cost.as_dict()
        trace("gate", "gamma", ok=decision.commit, note=_gate_note(decision), **decision.as_dict())

        if decision.commit:
            result.decision = DECISION_COMMIT
            applied = await asyncio.to_thread(self._applier.apply, candidate.diff)
            result.applied = applied.ok
            if applied.ok:
                result.note = "applied"
            else:
                result.apply_error = applied.stderr.strip() or "apply failed"
                result.note = "apply_failed"
            trace("patch", "apply", ok=applied.ok, note=result.note, files=list(candidate.files))
            if applied.ok:
                try:
                    self._write_artifacts(plan, decision, resolution)
                except OSError as e:
                    logger.warning(
                        f"could not write run artifacts: {e}",
                        extra={"event": "kernel_artifacts_failed", "run_id": run_id, "mode": mode},
                    )
        else:
            result.decision = DECISION_DEFER
            intent = Intent(
                run_id=run_id,
                goal=goal,
                title=f"{candidate.title} (γ={decision.gamma:.2f})",
                body=INTENT_BODY,
                branch=f"pipe/{epoch_ms()}",
                diff=candidate.diff,
            )
            self._intents.append(intent)
            result.intent_branch = intent.branch
            result.note = _gate_note(decision)
            trace("intent", "request_pr", note=intent.title, branch=intent.branch)

        trace("done", "end", decision=result.decision)
        logger.info(
            f"kernel run {result.decision}",
            extra={"event": "kernel_run_done", "run_id": run_id, "mode": mode},
        )
        return result

    def _resolve_context(self, refs: list[str]) -> ContextResolution:
        resolved: dict[str, str] = {}
        unresolved: list[str] = []
        for ref in refs:
            if not ref.startswith(CONTEXT_URI_PREFIX):
                unresolved.append(ref)
                continue
            try:
                resolved[ref] = self._ctx.resolve(ref)
            except (NotFoundError, ContractViolationError):
                unresolved.append(ref)
        return ContextResolution(resolved=resolved, unresolved=unresolved)

    @staticmethod
    def _trace_phase(ev: SchedulerEvent, trace) -> None:
        if ev.kind == "task_error":
            trace(ev.task_id, "error", ok=False, note=str(ev.error))
            return
        if ev.kind != "task_complete":
            return
        if ev.task_id == "evaluate":
            trace("evaluate", "context", resolved=len(ev.result.resolved), unresolved=ev.result.unresolved)
        elif ev.task_id == "plan":
            trace("plan", "plan", note=ev.result.goal)
        elif ev.task_id == "produce":
            cand: Candidate = ev.result
            trace(
                "produce",
                "candidate",
                note=cand.title,
                files=list(cand.files),
                changed_lines=changed_line_count(cand.diff),
                estimated_cost=cand.estimated_cost,
            )
        elif ev.task_id == "validate":
            trace("validate", "evidence", **ev.result.as_dict())

    def _write_artifacts(self, plan: Plan, decision: GateDecision, resolution: ContextResolution) -> None:
        if self._ops_dir is None:
            return
        self._ops_dir.mkdir(parents=True, exist_ok=True)
        (self._ops_dir / "LAST_PLAN.json").write_text(json.dumps(plan.as_dict(), indent=2), encoding="utf-8")
        cited = "x" if resolution.resolved else " "
        verify = (
            "- [x] Diff applies\n"
            "- [x] TRACE row written\n"
            f"- [x] Cost <= {decision.cost.ceiling} ({self._policy.cost_config.currency})\n"
            f"- [{cited}] Retrieval cited\n"
        )
        (self._ops_dir / "LAST_VERIFY.md").write_text(verify, encoding="utf-8")


def _gate_note(decision: GateDecision) -> str:
    cmp = ">=" if decision.passed else "<"
    note = f"{decision.gamma}{cmp}{decision.threshold}"
    if not decision.cost.ok:
        note += f"; cost {decision.cost.estimated}>{decision.cost.ceiling}"
    return note
