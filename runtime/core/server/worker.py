"""Kernel worker processes.

A Worker runs one kernel pass out of process. Output is forwarded chunk by
chunk, per stream, in the order it was read; the exit callbacks fire once,
after both streams have hit EOF, so a job's last output event always precedes
its completion.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Sequence

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, str], None]
ExitCallback = Callable[[int], None]

READ_CHUNK_BYTES = 4096


class Worker(ABC):
    def __init__(self) -> None:
        self._output_callbacks: list[OutputCallback] = []
        self._exit_callbacks: list[ExitCallback] = []

    def on_output(self, callback: OutputCallback) -> None:
        """Register `callback(stream, chunk)`; stream is "stdout" or "stderr"."""
        self._output_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    def _emit_output(self, stream: str, chunk: str) -> None:
        for cb in list(self._output_callbacks):
            cb(stream, chunk)

    def _emit_exit(self, code: int) -> None:
        for cb in list(self._exit_callbacks):
            cb(code)

    @property
    @abstractmethod
    def pid(self) -> int | None: ...

    @abstractmethod
    async def start(self) -> None:
        """Spawn the process. Raises OSError when it cannot be spawned."""

    @abstractmethod
    def kill(self) -> None:
        """Ask the process to terminate; escalate if it ignores the request."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for exit (and drained output); return the exit code."""


class SubprocessWorker(Worker):
    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        kill_grace_seconds: float = 5.0,
    ):
        super().__init__()
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = list(argv)
        self._cwd = cwd
        self._env = env
        self._grace = kill_grace_seconds
        self._proc: asyncio.subprocess.Process | None = None
        self._done: asyncio.Task[int] | None = None
        self._escalation: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    async def start(self) -> None:
        if self._proc is not None:
            raise RuntimeError("worker already started")
        self._proc = await asyncio.create_subprocess_exec(
            *self.argv,
            cwd=str(self._cwd) if self._cwd is not None else None,
            env=self._env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        logger.info("worker_spawned", extra={"event": "worker_spawned", "details": {"pid": self._proc.pid}})
        self._done = asyncio.create_task(self._pump())

    async def _read_stream(self, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_BYTES)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._emit_output(name, tail)
                return
            chunk = decoder.decode(data)
            if chunk:
                self._emit_output(name, chunk)

    async def _pump(self) -> int:
        assert self._proc is not None
        await asyncio.gather(
            self._read_stream(self._proc.stdout, "stdout"),
            self._read_stream(self._proc.stderr, "stderr"),
        )
        code = await self._proc.wait()
        if self._escalation is not None:
            self._escalation.cancel()
        self._emit_exit(code)
        return code

    def kill(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        if self._escalation is None:
            self._escalation = asyncio.create_task(self._escalate(proc))

    async def _escalate(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace)
        except asyncio.TimeoutError:
            logger.warning("worker ignored SIGTERM; killing", extra={"event": "worker_killed", "details": {"pid": proc.pid}})
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def wait(self) -> int:
        if self._done is None:
            raise RuntimeError("worker not started")
        return await asyncio.shield(self._done)


def kernel_worker_env(core_dir: Path) -> dict[str, str]:
    """Environment for `python -m kernel.cli` with the runtime importable."""
    env = dict(os.environ)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = str(core_dir) if not existing else os.pathsep.join([str(core_dir), existing])
    return env
