from __future__ import annotations

import asyncio
import signal
import sys

import pytest

from errors import ServiceUnavailableError
from executor.state_machine import JobState
from server.events import EventKind
from server.jobs import Job
from server.service import OrchestrationServer, parse_chat, parse_direct
from server.worker import SubprocessWorker
from storage.jsonl import JsonlTraceLedger
from storage.paste import FileContextStore

SLEEPER = "import time\nprint('working', flush=True)\ntime.sleep(60)\n"


def _server(ledger: JsonlTraceLedger, context_store: FileContextStore, code: str = SLEEPER) -> OrchestrationServer:
    def factory(_job: Job) -> SubprocessWorker:
        return SubprocessWorker([sys.executable, "-c", code], kill_grace_seconds=2.0)

    return OrchestrationServer(
        ledger=ledger, context_store=context_store, worker_factory=factory, poll_interval=0.01
    )


def test_parse_chat_extracts_mode_and_refs() -> None:
    goal, mode, refs = parse_chat("tidy the docs --mode=safe using ctx://paste/abc123", ["ctx://paste/def456"])
    assert mode == "safe"
    assert refs == ["ctx://paste/abc123", "ctx://paste/def456"]
    assert goal == "tidy the docs  using ctx://paste/abc123"
    assert parse_chat("hello")[1] == "fast"


@pytest.mark.parametrize(
    "command, goal",
    [
        ("execute run the tests", "Execute: run the tests"),
        ("query open intents", "Query: open intents"),
        ("summarise the week", "summarise the week"),
    ],
)
def test_parse_direct(command: str, goal: str) -> None:
    assert parse_direct(command) == goal


@pytest.mark.asyncio
async def test_shutdown_with_running_job_and_two_subscribers(ledger, context_store) -> None:
    server = _server(ledger, context_store)
    await server.start()
    s1, s2 = server.subscribe(), server.subscribe()

    snap = await server.chat("long task", wait=False)
    job = server.jobs.get(snap["job_id"])
    for _ in range(500):
        if job.state is JobState.RUNNING and job.stdout:
            break
        await asyncio.sleep(0.01)
    assert server.status()["running_jobs"] == 1
    assert server.status()["clients"] == 2

    await server.shutdown()

    assert job.state is JobState.ERRORED
    assert job.error == "shutdown"
    assert job.exit_code == -signal.SIGTERM
    for sub in (s1, s2):
        assert sub.closed
        kinds = [e.kind for e in [e async for e in sub]]
        assert kinds[0] is EventKind.CONNECTED
        assert EventKind.JOB_ERROR in kinds
        assert kinds[-1] is EventKind.SHUTDOWN
    last = ledger.last()
    assert (last.phase, last.step) == ("server", "shutdown")
    assert last.extra == {"jobs_cancelled": 1, "subscribers_closed": 2}
    with pytest.raises(ServiceUnavailableError):
        await server.direct("execute anything")


@pytest.mark.asyncio
async def test_trace_events_reach_subscribers(ledger, context_store) -> None:
    server = _server(ledger, context_store, code='print("{}")')
    await server.start()
    sub = server.subscribe()

    result = await server.direct("query status", mode="cheap")
    await server.shutdown()

    assert result["state"] == "completed"
    assert result["goal"] == "Query: status"
    events = [e async for e in sub]
    traces = [e for e in events if e.kind is EventKind.TRACE]
    assert [(t.data["phase"], t.data["step"]) for t in traces][:3] == [("job", "start"), ("job", "running"), ("job", "complete")]
    assert server.trace(limit=50, mode="cheap")[-1]["step"] == "complete"


@pytest.mark.asyncio
async def test_paste_and_status(ledger, context_store) -> None:
    server = _server(ledger, context_store)
    await server.start()
    try:
        ref = server.paste("some context")
        assert ref["ref"].startswith("ctx://paste/")
        status = server.status()
        assert status["server"] == "nstar-orchestration"
        assert status["running_jobs"] == 0 and status["clients"] == 0
        assert status["uptime"] >= 0
    finally:
        await server.shutdown()
