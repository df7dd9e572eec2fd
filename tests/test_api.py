from __future__ import annotations

import sys

import pytest
from fastapi.testclient import TestClient

from api.main import AppComponents, create_app
from server.jobs import Job
from server.service import OrchestrationServer
from server.worker import SubprocessWorker
from validation.schema_validator import SchemaValidator

ECHO_JOB = "import json, sys\nprint(json.dumps({'argv': sys.argv[1:], 'decision': 'DEFER'}))\n"


@pytest.fixture
def client(ledger, context_store):
    def factory(job: Job) -> SubprocessWorker:
        return SubprocessWorker([sys.executable, "-c", ECHO_JOB, job.goal, job.mode])

    def build() -> AppComponents:
        server = OrchestrationServer(ledger=ledger, context_store=context_store, worker_factory=factory)
        return AppComponents(server=server, schema_validator=SchemaValidator.load_from_dir())

    with TestClient(create_app(build)) as c:
        yield c


def test_health_and_status(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    status = client.get("/status").json()
    assert status["server"] == "nstar-orchestration"
    assert {"uptime", "clients", "running_jobs", "timestamp", "version"} <= set(status)


def test_chat_runs_job_to_completion(client: TestClient) -> None:
    res = client.post("/chat", json={"message": "tidy docs --mode=cheap"})
    assert res.status_code == 200
    job = res.json()["job"]
    assert job["state"] == "completed"
    assert job["mode"] == "cheap"
    assert job["result"] == {"argv": ["tidy docs", "cheap"], "decision": "DEFER"}

    again = client.get(f"/jobs/{job['job_id']}").json()["job"]
    assert again["exit_code"] == 0
    assert [j["job_id"] for j in client.get("/jobs").json()["jobs"]] == [job["job_id"]]


def test_direct_maps_verbs(client: TestClient) -> None:
    job = client.post("/direct", json={"command": "execute lint"}).json()["job"]
    assert job["goal"] == "Execute: lint"


def test_paste_then_trace(client: TestClient) -> None:
    ref = client.post("/paste", json={"text": "notes"}).json()
    assert ref["ref"] == f"ctx://paste/{ref['id']}"

    client.post("/chat", json={"message": "use it", "context": [ref["ref"]]})
    events = client.get("/trace", params={"limit": 3}).json()["events"]
    assert len(events) == 3
    assert events[-1]["phase"] == "job"
    assert events[-1]["step"] == "complete"


def test_invalid_payloads_are_rejected(client: TestClient) -> None:
    res = client.post("/paste", json={"text": ""})
    assert res.status_code == 422
    assert res.json()["error"] == "SCHEMA_VALIDATION_ERROR"
    assert res.json()["kind"] == "PasteRequest"

    res = client.post("/chat", json={"message": "x", "surprise": True})
    assert res.status_code == 422
    assert client.get("/trace", params={"limit": 0}).status_code == 422


def test_unknown_job_and_terminal_cancel(client: TestClient) -> None:
    res = client.get("/jobs/job_missing")
    assert res.status_code == 404
    assert res.json() == {"error": "NOT_FOUND", "resource_type": "Job", "resource_id": "job_missing"}

    job = client.post("/direct", json={"command": "query x"}).json()["job"]
    res = client.post(f"/jobs/{job['job_id']}/cancel")
    assert res.status_code == 409
    assert res.json()["error"] == "CONFLICT"


def test_shutdown_is_logged_on_exit(ledger, context_store) -> None:
    def build() -> AppComponents:
        server = OrchestrationServer(
            ledger=ledger, context_store=context_store, worker_factory=lambda job: SubprocessWorker([sys.executable, "-c", "pass"])
        )
        return AppComponents(server=server, schema_validator=SchemaValidator.load_from_dir())

    with TestClient(create_app(build)) as c:
        assert c.get("/health").status_code == 200
    assert (ledger.last().phase, ledger.last().step) == ("server", "shutdown")
