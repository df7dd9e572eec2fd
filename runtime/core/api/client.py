"""Async HTTP client for the orchestration server."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Iterable

import httpx

from errors import NstarRuntimeError
from server.events import StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8080"
LIVENESS_TIMEOUT_SECONDS = 2.0


class ServerRequestError(NstarRuntimeError):
    def __init__(self, status_code: int, payload: Any):
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"server returned {status_code}: {payload}")


class NstarClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout if timeout is None else timeout,
            transport=self._transport,
        )

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        if response.status_code >= 400:
            raise ServerRequestError(response.status_code, payload)
        return payload

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        async with self._client() as client:
            return self._decode(await client.get(path, params=params))

    async def _post(self, path: str, body: dict[str, Any] | None = None) -> Any:
        async with self._client() as client:
            return self._decode(await client.post(path, json=body))

    async def is_alive(self) -> bool:
        """True when /status answers 200 within two seconds."""
        async with self._client(LIVENESS_TIMEOUT_SECONDS) as client:
            try:
                response = await client.get("/status")
            except httpx.HTTPError as e:
                logger.debug(f"server not reachable: {e}")
                return False
        return response.status_code == 200

    async def status(self) -> dict[str, Any]:
        return await self._get("/status")

    async def chat(self, message: str, context: Iterable[str] = (), *, wait: bool = True) -> dict[str, Any]:
        res = await self._post("/chat", {"message": message, "context": list(context), "wait": wait})
        return res["job"]

    async def direct(self, command: str, mode: str = "fast", *, wait: bool = True) -> dict[str, Any]:
        res = await self._post("/direct", {"command": command, "mode": mode, "wait": wait})
        return res["job"]

    async def paste(self, text: str) -> dict[str, Any]:
        return await self._post("/paste", {"text": text})

    async def trace(self, limit: int = 50, mode: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if mode:
            params["mode"] = mode
        res = await self._get("/trace", params)
        return res["events"]

    async def jobs(self) -> list[dict[str, Any]]:
        return (await self._get("/jobs"))["jobs"]

    async def job(self, job_id: str) -> dict[str, Any]:
        return (await self._get(f"/jobs/{job_id}"))["job"]

    async def cancel(self, job_id: str) -> dict[str, Any]:
        return (await self._post(f"/jobs/{job_id}/cancel"))["job"]

    async def iter_events(self) -> AsyncIterator[StreamEvent]:
        """Yield stream events until the server closes the stream."""
        async with self._client() as client:
            async with client.stream("GET", "/stream", timeout=httpx.Timeout(self._timeout, read=None)) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._decode(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    raw = line[len("data:"):].strip()
                    if not raw:
                        continue
                    try:
                        yield StreamEvent.parse(raw)
                    except json.JSONDecodeError:
                        logger.warning("skipping malformed stream frame", extra={"event": "stream_frame_invalid"})
