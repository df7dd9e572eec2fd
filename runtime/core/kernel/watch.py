"""Interval re-invocation of the kernel loop.

The watch loop is how the kernel runs continuously: one bounded pass per
interval. It stops attempting new work (without losing anything already
logged) when the run budget or the per-day cost ceiling is exhausted.
With an updater, each pass first fast-forwards the checkout from upstream.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from kernel.loop import DECISION_ERROR, KernelRunLoop, RunResult
from kernel.update import GitUpdater
from policy.gate import PolicyEngine
from storage.interfaces import TraceEvent, TraceLedger
from utils import utcnow

logger = logging.getLogger(__name__)

STOP_BUDGET = "budget_exhausted"
STOP_MAX_RUNS = "max_runs_reached"
STOP_REQUESTED = "stop_requested"


@dataclass
class WatchSummary:
    runs: int = 0
    spent_today: float = 0.0
    stopped_reason: str | None = None
    results: list[RunResult] = field(default_factory=list)


class WatchLoop:
    def __init__(
        self,
        *,
        kernel: KernelRunLoop,
        policy: PolicyEngine,
        ledger: TraceLedger,
        goal: str,
        mode: str = "fast",
        ctx_refs: tuple[str, ...] = (),
        interval_seconds: float = 600.0,
        max_runs: int = 0,
        estimated_cost: float = 0.02,
        updater: GitUpdater | None = None,
        today: Callable[[], date] = lambda: utcnow().date(),
    ):
        self._kernel = kernel
        self._policy = policy
        self._ledger = ledger
        self._goal = goal
        self._mode = mode
        self._ctx_refs = ctx_refs
        self._interval = interval_seconds
        self._max_runs = max_runs
        self._estimated_cost = estimated_cost
        self._updater = updater
        self._today = today
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> WatchSummary:
        summary = WatchSummary()
        day = self._today()
        while not self._stop.is_set():
            if self._today() != day:
                day = self._today()
                summary.spent_today = 0.0

            if self._policy.daily_budget_left(summary.spent_today) < self._estimated_cost:
                summary.stopped_reason = STOP_BUDGET
                self._ledger.append(
                    TraceEvent(
                        phase="watch",
                        step=STOP_BUDGET,
                        ok=True,
                        note=f"spent {summary.spent_today:.2f} of {self._policy.cost_config.per_day_ceiling}",
                    )
                )
                logger.warning("watch budget exhausted", extra={"event": "watch_budget_exhausted"})
                break

            if self._updater is not None:
                await self._update()

            result = await self._kernel.run(self._goal, self._mode, self._ctx_refs)
            summary.runs += 1
            summary.results.append(result)
            if result.decision != DECISION_ERROR and result.cost:
                summary.spent_today += float(result.cost["estimated"])
            else:
                summary.spent_today += self._estimated_cost
            if self._max_runs and summary.runs >= self._max_runs:
                summary.stopped_reason = STOP_MAX_RUNS
                break

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

        if summary.stopped_reason is None:
            summary.stopped_reason = STOP_REQUESTED
        return summary

    async def _update(self) -> None:
        outcome = await asyncio.to_thread(self._updater.pull)
        if outcome.updated or not outcome.ok:
            self._ledger.append(
                TraceEvent(
                    phase="watch",
                    step="update",
                    ok=outcome.ok,
                    note=outcome.error or f"fast-forwarded {outcome.behind} commit(s)",
                    extra={"ahead": outcome.ahead, "behind": outcome.behind},
                )
            )
