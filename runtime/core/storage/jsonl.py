"""Line-delimited JSON drivers for the trace ledger and the intents log.

Append discipline: every record is serialized to one complete line and
written with a single `os.write` on an O_APPEND descriptor, then fsync'd.
Concurrent appenders (threads or processes) therefore never interleave
partial lines. Readers skip corrupted or partial lines instead of failing.

Change notification has two sources feeding the same listener set:
- appends made through this ledger instance notify synchronously;
- `LedgerTailer` notices lines appended by other processes (kernel workers)
  by tracking the file's byte offset.
Lines written by this instance are recognised by their start offset so a
listener never sees the same event twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Iterator

from storage.interfaces import Intent, IntentLog, TraceEvent, TraceLedger, TraceListener
from utils import json_dumps

logger = logging.getLogger(__name__)


def _append_line(path: Path, record: dict[str, Any]) -> int:
    """Append one JSON line; return the byte offset at which it starts.

    A torn final line left by a killed writer is terminated first, in the same
    write, so the new record never gets glued onto it.
    """
    line = (json_dumps(record) + "\n").encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_APPEND | os.O_CREAT, 0o644)
    try:
        size = os.fstat(fd).st_size
        data = line
        if size and os.pread(fd, 1, size - 1) != b"\n":
            data = b"\n" + line
        written = os.write(fd, data)
        if written != len(data):
            raise OSError(f"short write to {path} ({written}/{len(data)} bytes)")
        os.fsync(fd)
        end = os.lseek(fd, 0, os.SEEK_CUR)
    finally:
        os.close(fd)
    return end - len(line)


def _iter_records(path: Path) -> Iterator[dict[str, Any]]:
    if not path.exists():
        return
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(rec, dict):
                yield rec


class JsonlTraceLedger(TraceLedger):
    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()
        self._listeners: list[TraceListener] = []
        self._own_offsets: set[int] = set()
        self._tracking_own = False

    def append(self, event: TraceEvent) -> TraceEvent:
        with self._lock:
            offset = _append_line(self.path, event.to_record())
            if self._tracking_own:
                self._own_offsets.add(offset)
        self._notify(event)
        return event

    def tail(self, n: int, **filters: Any) -> list[TraceEvent]:
        if n <= 0:
            return []
        active = {k: v for k, v in filters.items() if v is not None}
        events: list[TraceEvent] = []
        for rec in _iter_records(self.path):
            try:
                ev = TraceEvent.from_record(rec)
            except (KeyError, TypeError, ValueError):
                continue
            if all(ev.field_value(k) == v for k, v in active.items()):
                events.append(ev)
        return events[-n:]

    def for_run(self, run_id: str) -> list[TraceEvent]:
        return self.tail(2**31, run_id=run_id)

    def last(self) -> TraceEvent | None:
        events = self.tail(1)
        return events[0] if events else None

    def on_change(self, callback: TraceListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def tailer(self, *, poll_interval: float = 0.25) -> "LedgerTailer":
        return LedgerTailer(self, poll_interval=poll_interval)

    def _notify(self, event: TraceEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for cb in listeners:
            try:
                cb(event)
            except Exception:
                logger.exception("ledger_listener_failed", extra={"event": "ledger_listener_failed"})

    def _track_own_appends(self, enabled: bool) -> None:
        with self._lock:
            self._tracking_own = enabled
            if not enabled:
                self._own_offsets.clear()

    def _claim_own(self, offset: int) -> bool:
        with self._lock:
            if offset in self._own_offsets:
                self._own_offsets.discard(offset)
                return True
            return False


class LedgerTailer:
    """Feeds lines appended by other processes into the ledger's listeners."""

    def __init__(self, ledger: JsonlTraceLedger, *, poll_interval: float = 0.25):
        self._ledger = ledger
        self._poll_interval = poll_interval
        self._offset = 0
        self._pending = b""
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def prime(self) -> None:
        """Start tailing from the current end of file."""
        path = self._ledger.path
        self._offset = path.stat().st_size if path.exists() else 0
        self._pending = b""
        self._ledger._track_own_appends(True)

    def poll_once(self) -> int:
        """Read newly completed lines; return how many foreign events were delivered."""
        path = self._ledger.path
        if not path.exists():
            return 0
        size = path.stat().st_size
        if size < self._offset:
            # Truncated or replaced underneath us: start over from the top.
            self._offset = 0
            self._pending = b""
        if size == self._offset:
            return 0

        with path.open("rb") as fh:
            fh.seek(self._offset)
            chunk = fh.read(size - self._offset)
        line_start = self._offset - len(self._pending)
        self._offset += len(chunk)
        buf = self._pending + chunk

        delivered = 0
        *complete, self._pending = buf.split(b"\n")
        for raw in complete:
            start = line_start
            line_start += len(raw) + 1
            if self._ledger._claim_own(start) or not raw.strip():
                continue
            try:
                event = TraceEvent.from_record(json.loads(raw.decode("utf-8")))
            except (ValueError, KeyError, TypeError, UnicodeDecodeError):
                continue
            self._ledger._notify(event)
            delivered += 1
        return delivered

    def start(self) -> None:
        if self.running:
            return
        self.prime()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="ledger-tailer")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ledger._track_own_appends(False)

    async def _run(self) -> None:
        while True:
            try:
                self.poll_once()
            except OSError:
                logger.exception("ledger_tail_failed", extra={"event": "ledger_tail_failed"})
            await asyncio.sleep(self._poll_interval)


class JsonlIntentLog(IntentLog):
    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def append(self, intent: Intent) -> None:
        with self._lock:
            _append_line(self.path, intent.to_record())

    def tail(self, n: int) -> list[dict[str, Any]]:
        if n <= 0:
            return []
        return list(_iter_records(self.path))[-n:]
