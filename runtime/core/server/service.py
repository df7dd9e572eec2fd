"""Orchestration server core (transport independent).

Owns the broadcaster, the job manager and the ledger tailer. The HTTP layer
in `api/main.py` is a thin adapter over this class.

Shutdown order:
1. stop accepting new work (requests get ServiceUnavailableError);
2. cancel running jobs and wait until each has settled as `errored`;
3. flush pending ledger lines, send `shutdown` and close every subscriber;
4. append the `server/shutdown` TraceEvent, the last ledger entry.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Iterable

from config.settings import RuntimeConfig
from errors import ServiceUnavailableError
from server.broadcaster import Broadcaster, Subscriber
from server.events import StreamEvent
from server.jobs import Job, JobManager, WorkerFactory
from server.worker import SubprocessWorker, kernel_worker_env
from storage.interfaces import TraceEvent
from storage.jsonl import JsonlTraceLedger, LedgerTailer
from storage.paste import FileContextStore
from utils import now_iso

logger = logging.getLogger(__name__)

VERSION = "0.3.0"
SERVER_NAME = "nstar-orchestration"

DEFAULT_TRACE_LIMIT = 50

_MODE_FLAG = re.compile(r"--mode=(\w+)")
_CTX_REF = re.compile(r"ctx://\w+/\w+")
_DIRECT_VERBS = {"execute": "Execute", "query": "Query"}

_CORE_DIR = Path(__file__).resolve().parents[1]


def parse_chat(message: str, context: Iterable[str] = ()) -> tuple[str, str, list[str]]:
    """Split a chat message into (goal, mode, ctx_refs)."""
    m = _MODE_FLAG.search(message)
    mode = m.group(1) if m else "fast"
    refs: list[str] = []
    for ref in [*_CTX_REF.findall(message), *context]:
        if ref and ref not in refs:
            refs.append(ref)
    goal = _MODE_FLAG.sub("", message).strip() or message.strip()
    return goal, mode, refs


def parse_direct(command: str) -> str:
    """Map a direct command to a kernel goal.

    `execute <x>` -> "Execute: <x>", `query <x>` -> "Query: <x>", anything
    else is used verbatim.
    """
    verb, _, rest = command.strip().partition(" ")
    label = _DIRECT_VERBS.get(verb.lower())
    if label is None:
        return command.strip()
    return f"{label}: {rest.strip()}"


def kernel_worker_factory(cfg: RuntimeConfig) -> WorkerFactory:
    def factory(job: Job) -> SubprocessWorker:
        argv = [*cfg.worker.command, "run", f"--goal={job.goal}", f"--mode={job.mode}"]
        if job.ctx_refs:
            argv.append("--ctx=" + ",".join(job.ctx_refs))
        return SubprocessWorker(
            argv,
            cwd=cfg.worker.cwd or cfg.paths.repo_root,
            env=kernel_worker_env(_CORE_DIR),
            kill_grace_seconds=cfg.worker.kill_grace_seconds,
        )

    return factory


class OrchestrationServer:
    def __init__(
        self,
        *,
        ledger: JsonlTraceLedger,
        context_store: FileContextStore,
        worker_factory: WorkerFactory,
        queue_size: int = 256,
        poll_interval: float = 0.25,
        retain_finished_jobs: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.context_store = context_store
        self.broadcaster = Broadcaster(queue_size=queue_size)
        self.jobs = JobManager(
            ledger=ledger,
            broadcaster=self.broadcaster,
            worker_factory=worker_factory,
            retain_finished=retain_finished_jobs,
        )
        self._tailer: LedgerTailer = ledger.tailer(poll_interval=poll_interval)
        self._unsubscribe_ledger: Callable[[], None] | None = None
        self._clock = clock
        self._started_at: float | None = None
        self._accepting = False
        self._stopped = False

    @classmethod
    def from_config(cls, cfg: RuntimeConfig) -> "OrchestrationServer":
        return cls(
            ledger=JsonlTraceLedger(cfg.paths.ledger_path),
            context_store=FileContextStore(cfg.paths.paste_dir),
            worker_factory=kernel_worker_factory(cfg),
            queue_size=cfg.stream.subscriber_queue_size,
            poll_interval=cfg.stream.ledger_poll_interval_seconds,
            retain_finished_jobs=cfg.worker.retain_finished_jobs,
        )

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def start(self) -> None:
        self._unsubscribe_ledger = self.ledger.on_change(self._on_trace)
        self._tailer.start()
        self._started_at = self._clock()
        self._accepting = True
        self.ledger.append(TraceEvent(phase="server", step="start", note=f"{SERVER_NAME} {VERSION}"))
        logger.info("server_started", extra={"event": "server_started"})

    def _on_trace(self, event: TraceEvent) -> None:
        self.broadcaster.publish(StreamEvent.trace(event))

    def _ensure_accepting(self) -> None:
        if not self._accepting:
            raise ServiceUnavailableError("server is not accepting requests")

    # --- subscribers ---

    def subscribe(self) -> Subscriber:
        self._ensure_accepting()
        return self.broadcaster.subscribe()

    def unsubscribe(self, sub: Subscriber) -> None:
        self.broadcaster.unsubscribe(sub)

    # --- commands ---

    async def run(self, goal: str, mode: str = "fast", ctx_refs: Iterable[str] = (), *, wait: bool = True) -> dict[str, Any]:
        self._ensure_accepting()
        job = await self.jobs.submit(goal, mode, ctx_refs)
        if wait:
            job = await self.jobs.wait(job.job_id)
        return job.snapshot()

    async def chat(self, message: str, context: Iterable[str] = (), *, wait: bool = True) -> dict[str, Any]:
        goal, mode, refs = parse_chat(message, context)
        return await self.run(goal, mode, refs, wait=wait)

    async def direct(self, command: str, mode: str = "fast", *, wait: bool = True) -> dict[str, Any]:
        return await self.run(parse_direct(command), mode, (), wait=wait)

    def paste(self, text: str) -> dict[str, Any]:
        self._ensure_accepting()
        return self.context_store.ingest(text).as_dict()

    def trace(self, limit: int = DEFAULT_TRACE_LIMIT, mode: str | None = None) -> list[dict[str, Any]]:
        return [e.to_record() for e in self.ledger.tail(limit, mode=mode)]

    def status(self) -> dict[str, Any]:
        uptime = 0.0 if self._started_at is None else self._clock() - self._started_at
        return {
            "server": SERVER_NAME,
            "version": VERSION,
            "accepting": self._accepting,
            "uptime": round(uptime, 3),
            "clients": len(self.broadcaster),
            "running_jobs": self.jobs.running_count,
            "timestamp": now_iso(),
        }

    def list_jobs(self) -> list[dict[str, Any]]:
        return [j.snapshot(include_output=False) for j in self.jobs.list_jobs()]

    def job(self, job_id: str) -> dict[str, Any]:
        return self.jobs.get(job_id).snapshot()

    def cancel(self, job_id: str) -> dict[str, Any]:
        return self.jobs.cancel(job_id).snapshot(include_output=False)

    async def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._accepting = False
        logger.info("server_shutting_down", extra={"event": "server_shutting_down"})

        cancelled = await self.jobs.shutdown()
        if self._tailer.running:
            self._tailer.poll_once()
        self.broadcaster.publish(StreamEvent.shutdown())
        closed = self.broadcaster.close_all()
        if self._unsubscribe_ledger is not None:
            self._unsubscribe_ledger()
            self._unsubscribe_ledger = None
        await self._tailer.stop()

        self.ledger.append(
            TraceEvent(
                phase="server",
                step="shutdown",
                note=f"cancelled {cancelled} job(s), closed {closed} subscriber(s)",
                extra={"jobs_cancelled": cancelled, "subscribers_closed": closed},
            )
        )
        logger.info("server_stopped", extra={"event": "server_stopped"})
