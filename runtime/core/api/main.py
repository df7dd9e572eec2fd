"""FastAPI surface for the nstar orchestration server."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from fastapi import Body, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config.logging import apply_logging_config
from config.settings import RuntimeConfig, default_config_paths, load_runtime_config
from errors import (
    ConfigurationError,
    ConflictError,
    ContractViolationError,
    NotFoundError,
    SchemaValidationError,
    ServiceUnavailableError,
)
from server.service import DEFAULT_TRACE_LIMIT, VERSION, OrchestrationServer
from validation.schema_validator import SchemaValidator

logger = logging.getLogger(__name__)

MAX_TRACE_LIMIT = 1000


@dataclass(frozen=True)
class AppComponents:
    server: OrchestrationServer
    schema_validator: SchemaValidator


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, SchemaValidationError):
        return {
            "error": "SCHEMA_VALIDATION_ERROR",
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, ContractViolationError):
        return {"error": "CONTRACT_VIOLATION", "code": err.code, "message": str(err), "details": err.details}
    if isinstance(err, ConflictError):
        return {"error": "CONFLICT", "message": str(err), "details": err.details}
    if isinstance(err, NotFoundError):
        return {"error": "NOT_FOUND", "resource_type": err.resource_type, "resource_id": err.resource_id}
    if isinstance(err, ServiceUnavailableError):
        return {"error": "SERVICE_UNAVAILABLE", "message": str(err)}
    if isinstance(err, ConfigurationError):
        return {"error": "CONFIGURATION_ERROR", "message": str(err), "details": err.details}
    return {"error": "INTERNAL", "message": str(err)}


def _build_components() -> AppComponents:
    runtime_path, logging_path = default_config_paths()
    apply_logging_config(logging_path)
    cfg = load_runtime_config(runtime_path)
    return AppComponents(server=OrchestrationServer.from_config(cfg), schema_validator=SchemaValidator.load_from_dir())


def create_app(build: Callable[[], AppComponents] = _build_components) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Fail closed at startup if config or schemas cannot be loaded.
        comps = build()
        app.state.components = comps
        await comps.server.start()
        logger.info("runtime_started", extra={"event": "runtime_started"})
        try:
            yield
        finally:
            await comps.server.shutdown()

    app = FastAPI(title="nstar orchestration server", version=VERSION, lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(SchemaValidationError)
    def _schema_validation_handler(_req, exc: SchemaValidationError):
        return JSONResponse(status_code=422, content=_error_payload(exc))

    @app.exception_handler(ContractViolationError)
    def _contract_violation_handler(_req, exc: ContractViolationError):
        return JSONResponse(status_code=400, content=_error_payload(exc))

    @app.exception_handler(ConflictError)
    def _conflict_handler(_req, exc: ConflictError):
        return JSONResponse(status_code=409, content=_error_payload(exc))

    @app.exception_handler(NotFoundError)
    def _not_found_handler(_req, exc: NotFoundError):
        return JSONResponse(status_code=404, content=_error_payload(exc))

    @app.exception_handler(ServiceUnavailableError)
    def _unavailable_handler(_req, exc: ServiceUnavailableError):
        return JSONResponse(status_code=503, content=_error_payload(exc))

    @app.exception_handler(Exception)
    def _unhandled_handler(_req, exc: Exception):
        logger.exception("unhandled_error", extra={"event": "unhandled_error"})
        return JSONResponse(status_code=500, content=_error_payload(exc))

    def _components() -> AppComponents:
        return app.state.components

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok" if _components().server.accepting else "stopping"}

    @app.get("/status")
    async def status() -> dict[str, Any]:
        return _components().server.status()

    @app.get("/stream")
    async def stream(request: Request) -> StreamingResponse:
        server = _components().server
        sub = server.subscribe()

        async def events() -> AsyncIterator[str]:
            try:
                async for event in sub:
                    if await request.is_disconnected():
                        break
                    yield event.encode()
            finally:
                server.unsubscribe(sub)

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.post("/chat")
    async def chat(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        comps = _components()
        req = comps.schema_validator.normalize("ChatRequest", body)
        job = await comps.server.chat(req["message"], req["context"], wait=req["wait"])
        return {"job": job}

    @app.post("/direct")
    async def direct(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        comps = _components()
        req = comps.schema_validator.normalize("DirectRequest", body)
        job = await comps.server.direct(req["command"], req["mode"], wait=req["wait"])
        return {"job": job}

    @app.post("/paste")
    def paste(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        comps = _components()
        req = comps.schema_validator.normalize("PasteRequest", body)
        return comps.server.paste(req["text"])

    @app.get("/trace")
    def trace(
        limit: int = Query(DEFAULT_TRACE_LIMIT, ge=1, le=MAX_TRACE_LIMIT),
        mode: str | None = Query(None),
    ) -> dict[str, Any]:
        return {"events": _components().server.trace(limit, mode)}

    @app.get("/jobs")
    async def list_jobs() -> dict[str, Any]:
        return {"jobs": _components().server.list_jobs()}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str) -> dict[str, Any]:
        return {"job": _components().server.job(job_id)}

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str) -> dict[str, Any]:
        return {"job": _components().server.cancel(job_id)}

    return app


app = create_app()


def main() -> None:
    import uvicorn

    runtime_path, _ = default_config_paths()
    cfg: RuntimeConfig = load_runtime_config(runtime_path)
    # Open SSE streams never finish on their own; bound the wait before lifespan shutdown.
    uvicorn.run(app, host=cfg.service.host, port=cfg.service.port, log_config=None, timeout_graceful_shutdown=5)


if __name__ == "__main__":
    main()
