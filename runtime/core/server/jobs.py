"""Job supervision for the orchestration server.

Lifecycle (see executor.state_machine):

    starting -> running -> completed | errored

Rules:
- Every transition is appended to the trace ledger before the matching
  stream event is broadcast or the worker is touched.
- A non-zero exit still completes the job. Output that is not a JSON document
  is kept as {"raw_stdout", "raw_stderr"}.
- Spawn failures, transport failures and cancellation end in `errored`.
- Once a job is cancelled no further output is forwarded for it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from errors import ConflictError, NotFoundError, ServiceUnavailableError
from executor.state_machine import JobState, is_terminal, next_job_state
from server.broadcaster import Broadcaster
from server.events import StreamEvent
from server.worker import Worker
from storage.interfaces import TraceEvent, TraceLedger
from utils import epoch_ms, now_iso, to_base36

logger = logging.getLogger(__name__)

NOTE_CANCELLED = "cancelled"
NOTE_SHUTDOWN = "shutdown"
DEFAULT_RETAIN_FINISHED = 200


def new_job_id() -> str:
    return f"job_{to_base36(epoch_ms())}_{secrets.token_hex(3)}"


def parse_job_result(stdout: str, stderr: str) -> Any:
    text = stdout.strip()
    if text:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass
    return {"raw_stdout": stdout, "raw_stderr": stderr}


@dataclass
class Job:
    job_id: str
    goal: str
    mode: str
    ctx_refs: list[str] = field(default_factory=list)
    state: JobState = JobState.STARTING
    created_at: str = field(default_factory=now_iso)
    started_at: str | None = None
    finished_at: str | None = None
    pid: int | None = None
    exit_code: int | None = None
    result: Any = None
    error: str | None = None
    cancel_note: str | None = None
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return is_terminal(self.state)

    @property
    def cancelled(self) -> bool:
        return self.cancel_note is not None

    def snapshot(self, *, include_output: bool = True) -> dict[str, Any]:
        snap: dict[str, Any] = {
            "job_id": self.job_id,
            "goal": self.goal,
            "mode": self.mode,
            "ctx_refs": list(self.ctx_refs),
            "state": self.state.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "result": self.result,
            "error": self.error,
        }
        if include_output:
            snap["stdout"] = "".join(self.stdout)
            snap["stderr"] = "".join(self.stderr)
        return snap


WorkerFactory = Callable[[Job], Worker]


class JobManager:
    def __init__(
        self,
        *,
        ledger: TraceLedger,
        broadcaster: Broadcaster,
        worker_factory: WorkerFactory,
        retain_finished: int = DEFAULT_RETAIN_FINISHED,
    ):
        self._ledger = ledger
        self._broadcaster = broadcaster
        self._worker_factory = worker_factory
        self._retain_finished = max(0, retain_finished)
        self._jobs: dict[str, Job] = {}
        self._workers: dict[str, Worker] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._accepting = True

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def running_count(self) -> int:
        return sum(1 for j in self._jobs.values() if not j.terminal)

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    def list_jobs(self) -> list[Job]:
        return list(self._jobs.values())

    async def submit(self, goal: str, mode: str = "fast", ctx_refs: Iterable[str] = ()) -> Job:
        if not self._accepting:
            raise ServiceUnavailableError("server is shutting down")
        job = Job(job_id=new_job_id(), goal=goal, mode=mode, ctx_refs=[r for r in ctx_refs if r])
        self._jobs[job.job_id] = job
        self._trace(job, "start", note=goal, ctx_refs=job.ctx_refs)
        self._broadcaster.publish(StreamEvent.job_start(job.snapshot(include_output=False)))
        self._tasks[job.job_id] = asyncio.create_task(self._supervise(job), name=f"job:{job.job_id}")
        logger.info("job_submitted", extra={"event": "job_submitted", "job_id": job.job_id, "mode": mode})
        return job

    async def wait(self, job_id: str) -> Job:
        job = self.get(job_id)
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return job

    def cancel(self, job_id: str, *, note: str = NOTE_CANCELLED) -> Job:
        job = self.get(job_id)
        if job.terminal:
            raise ConflictError(f"Job {job_id} already {job.state.value}", details={"job_id": job_id})
        if job.cancelled:
            return job
        job.cancel_note = note
        self._trace(job, "cancel", note=note)
        worker = self._workers.get(job_id)
        if worker is not None:
            worker.kill()
        return job

    async def shutdown(self, *, timeout: float = 10.0) -> int:
        """Stop accepting jobs, cancel the live ones and wait for them to settle."""
        self._accepting = False
        live = [j.job_id for j in self._jobs.values() if not j.terminal]
        for job_id in live:
            self.cancel(job_id, note=NOTE_SHUTDOWN)
        tasks = [self._tasks[j] for j in live if j in self._tasks]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return len(live)

    async def _supervise(self, job: Job) -> None:
        try:
            await self._run_job(job)
        except asyncio.CancelledError:
            if not job.terminal:
                self._error(job, job.cancel_note or NOTE_CANCELLED)
            raise
        except Exception as e:
            logger.exception("job supervision failed", extra={"event": "job_failed", "job_id": job.job_id})
            if not job.terminal:
                self._error(job, f"transport error: {e}")
        finally:
            self._workers.pop(job.job_id, None)
            self._tasks.pop(job.job_id, None)
            self._forget_finished()

    def _forget_finished(self) -> None:
        """Drop the oldest finished jobs beyond the retention limit."""
        finished = [job_id for job_id, job in self._jobs.items() if job.terminal and job_id not in self._tasks]
        for job_id in finished[: max(0, len(finished) - self._retain_finished)]:
            del self._jobs[job_id]

    async def _run_job(self, job: Job) -> None:
        try:
            worker = self._worker_factory(job)
            worker.on_output(lambda stream, chunk: self._forward(job, stream, chunk))
            await worker.start()
        except (OSError, ValueError) as e:
            self._error(job, f"spawn failed: {e}")
            return
        self._workers[job.job_id] = worker
        job.pid = worker.pid
        job.started_at = now_iso()
        self._transition(job, JobState.RUNNING)
        self._trace(job, "running", pid=job.pid)
        if job.cancelled:
            worker.kill()

        code = await worker.wait()
        job.exit_code = code
        if job.cancelled:
            self._error(job, job.cancel_note or NOTE_CANCELLED)
            return
        self._complete(job, code)

    def _forward(self, job: Job, stream: str, chunk: str) -> None:
        if job.cancelled or job.terminal:
            return
        (job.stderr if stream == "stderr" else job.stdout).append(chunk)
        self._broadcaster.publish(StreamEvent.job_output(job.job_id, stream, chunk))

    def _complete(self, job: Job, code: int) -> None:
        stdout, stderr = "".join(job.stdout), "".join(job.stderr)
        job.result = parse_job_result(stdout, stderr)
        self._transition(job, JobState.COMPLETED)
        self._trace(job, "complete", ok=code == 0, exit_code=code)
        self._broadcaster.publish(
            StreamEvent.job_complete(
                {
                    "job_id": job.job_id,
                    "exit_code": code,
                    "result": job.result,
                    "stdout": stdout,
                    "stderr": stderr,
                    "timestamp": job.finished_at,
                }
            )
        )
        logger.info("job_completed", extra={"event": "job_completed", "job_id": job.job_id, "details": {"exit_code": code}})

    def _error(self, job: Job, error: str) -> None:
        job.error = error
        self._transition(job, JobState.ERRORED)
        self._trace(job, "error", ok=False, note=error, exit_code=job.exit_code)
        self._broadcaster.publish(
            StreamEvent.job_error({"job_id": job.job_id, "error": error, "timestamp": job.finished_at})
        )
        logger.warning(f"job errored: {error}", extra={"event": "job_errored", "job_id": job.job_id})

    def _transition(self, job: Job, new: JobState) -> None:
        job.state = next_job_state(job.state, new)
        if job.terminal:
            job.finished_at = now_iso()

    def _trace(self, job: Job, step: str, *, ok: bool = True, note: str | None = None, **extra: Any) -> None:
        self._ledger.append(
            TraceEvent(phase="job", step=step, ok=ok, note=note, extra={"job_id": job.job_id, "mode": job.mode, **extra})
        )
