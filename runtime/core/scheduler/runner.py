"""Round-based scheduler over a TaskGraph.

Each round computes the ready set, launches every ready task concurrently and
waits for the whole round to settle. A failing task does not cancel its
siblings. The run ends:

- `completed` when every task completed;
- `blocked` when the ready set is empty while incomplete tasks remain
  (a cycle, a dependency on an unknown task, or an errored upstream task).

Blocked is reported, never retried; the caller decides whether to re-run.
A started task always runs to completion or error.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from errors import ConflictError
from executor.state_machine import TaskState
from scheduler.graph import TaskGraph
from storage.interfaces import TraceEvent, TraceLedger

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_BLOCKED = "blocked"


@dataclass(frozen=True)
class SchedulerEvent:
    kind: str  # round_start | task_start | task_complete | task_error | blocked | complete
    round: int
    task_id: str | None = None
    result: Any = None
    error: BaseException | None = None
    ready: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScheduleOutcome:
    status: str
    rounds: int
    completed: list[str]
    errored: list[str]
    remaining: list[str]
    results: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMPLETED

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "rounds": self.rounds,
            "completed": list(self.completed),
            "errored": list(self.errored),
            "remaining": list(self.remaining),
            "errors": dict(self.errors),
        }


SchedulerListener = Callable[[SchedulerEvent], None]


class Scheduler:
    def __init__(
        self,
        graph: TaskGraph,
        *,
        ledger: TraceLedger | None = None,
        run_id: str | None = None,
        name: str = "scheduler",
    ):
        self._graph = graph
        self._ledger = ledger
        self._run_id = run_id
        self._name = name
        self._listeners: list[SchedulerListener] = []
        self._running = False
        self._started = False
        self._round = 0

    def on_event(self, callback: SchedulerListener) -> None:
        self._listeners.append(callback)

    def status(self) -> dict[str, Any]:
        g = self._graph
        completed = len(g.ids_in(TaskState.COMPLETED))
        return {
            "running": self._running,
            "round": self._round,
            "total": len(g),
            "completed": completed,
            "errored": len(g.ids_in(TaskState.ERRORED)),
            "remaining": len(g) - completed,
            "ready": g.ready(),
        }

    async def run(self) -> ScheduleOutcome:
        if self._started:
            raise ConflictError(f"Scheduler {self._name} has already run")
        self._started = True
        self._running = True
        logger.info("scheduler_start", extra={"event": "scheduler_start", "run_id": self._run_id})
        try:
            while not self._graph.is_complete():
                ready = self._graph.ready()
                if not ready:
                    return self._finish(STATUS_BLOCKED)
                self._round += 1
                self._emit(SchedulerEvent(kind="round_start", round=self._round, ready=tuple(ready)))
                await asyncio.gather(*(self._execute(tid) for tid in ready), return_exceptions=True)
            return self._finish(STATUS_COMPLETED)
        finally:
            self._running = False

    async def _execute(self, task_id: str) -> None:
        task = self._graph.get(task_id)
        inputs = self._graph.inputs_for(task_id)
        task.transition(TaskState.RUNNING)
        self._emit(SchedulerEvent(kind="task_start", round=self._round, task_id=task_id))
        try:
            result = task.work(inputs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            task.error = e
            task.transition(TaskState.ERRORED)
            self._emit(SchedulerEvent(kind="task_error", round=self._round, task_id=task_id, error=e))
            return
        task.result = result
        task.transition(TaskState.COMPLETED)
        self._emit(SchedulerEvent(kind="task_complete", round=self._round, task_id=task_id, result=result))

    def _finish(self, status: str) -> ScheduleOutcome:
        g = self._graph
        outcome = ScheduleOutcome(
            status=status,
            rounds=self._round,
            completed=g.ids_in(TaskState.COMPLETED),
            errored=g.ids_in(TaskState.ERRORED),
            remaining=[t.id for t in g if t.state != TaskState.COMPLETED],
            results={t.id: t.result for t in g if t.state == TaskState.COMPLETED},
            errors={t.id: str(t.error) for t in g if t.error is not None},
        )
        kind = "complete" if status == STATUS_COMPLETED else "blocked"
        self._emit(SchedulerEvent(kind=kind, round=self._round, ready=tuple(outcome.remaining)))
        return outcome

    def _emit(self, ev: SchedulerEvent) -> None:
        extra = {"event": f"scheduler_{ev.kind}", "run_id": self._run_id, "task_id": ev.task_id}
        if ev.kind == "task_error":
            logger.warning(f"task {ev.task_id} errored: {ev.error}", extra=extra)
        elif ev.kind == "blocked":
            logger.warning(f"{self._name} blocked with {len(ev.ready)} task(s) remaining", extra=extra)
        else:
            logger.info(f"scheduler_{ev.kind}", extra=extra)

        if self._ledger is not None and ev.kind != "task_start":
            self._ledger.append(self._trace_for(ev))

        for cb in list(self._listeners):
            try:
                cb(ev)
            except Exception:
                logger.exception("scheduler_listener_failed", extra={"event": "scheduler_listener_failed"})

    def _trace_for(self, ev: SchedulerEvent) -> TraceEvent:
        ok = ev.kind not in ("task_error", "blocked")
        extra: dict[str, Any] = {"round": ev.round}
        if ev.task_id is not None:
            extra["task_id"] = ev.task_id
        if ev.ready:
            extra["tasks"] = list(ev.ready)
        note = str(ev.error) if ev.error is not None else None
        return TraceEvent(phase=self._name, step=ev.kind, ok=ok, note=note, run_id=self._run_id, extra=extra)
