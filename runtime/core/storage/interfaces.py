"""Storage interfaces.

The runtime keeps all durable state in local append-only files. These
interfaces define the persistence boundary for:
- TraceEvents (the ledger, append-only)
- Intents (deferred candidate changes, append-only)
- Context blobs (content-addressed pasted text)

Concrete drivers live in `storage/jsonl.py` and `storage/paste.py`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from utils import now_iso

CONTEXT_URI_PREFIX = "ctx://paste/"


@dataclass(frozen=True)
class TraceEvent:
    phase: str
    step: str
    ok: bool = True
    note: str | None = None
    run_id: str | None = None
    extra: dict[str, Any] | None = None
    ts: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        # An empty extra is not written, so keep it as None in memory too.
        if not self.extra:
            object.__setattr__(self, "extra", None)

    def to_record(self) -> dict[str, Any]:
        rec: dict[str, Any] = {"ts": self.ts, "phase": self.phase, "step": self.step, "ok": self.ok}
        if self.run_id is not None:
            rec["run_id"] = self.run_id
        if self.note is not None:
            rec["note"] = self.note
        if self.extra:
            rec["extra"] = self.extra
        return rec

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> "TraceEvent":
        extra = rec.get("extra")
        return cls(
            ts=str(rec["ts"]),
            phase=str(rec["phase"]),
            step=str(rec["step"]),
            ok=bool(rec["ok"]),
            note=rec.get("note"),
            run_id=rec.get("run_id"),
            extra=extra if isinstance(extra, dict) else None,
        )

    def field_value(self, name: str) -> Any:
        """Look a field up at top level first, then inside `extra`."""
        rec = self.to_record()
        if name in rec:
            return rec[name]
        return (self.extra or {}).get(name)


@dataclass(frozen=True)
class Intent:
    goal: str
    title: str
    body: str
    branch: str
    diff: str
    run_id: str | None = None
    ts: str = field(default_factory=now_iso)

    def to_record(self) -> dict[str, Any]:
        return {
            "ts": self.ts,
            "run_id": self.run_id,
            "goal": self.goal,
            "title": self.title,
            "body": self.body,
            "branch": self.branch,
            "diff": self.diff,
        }


@dataclass(frozen=True)
class ContextRef:
    id: str
    path: Path

    @property
    def uri(self) -> str:
        return f"{CONTEXT_URI_PREFIX}{self.id}"

    def as_dict(self) -> dict[str, str]:
        return {"id": self.id, "ref": self.uri, "path": str(self.path)}


TraceListener = Callable[[TraceEvent], None]


class TraceLedger(ABC):
    @abstractmethod
    def append(self, event: TraceEvent) -> TraceEvent:
        """Durably append one event. The only mutating operation."""

    @abstractmethod
    def tail(self, n: int, **filters: Any) -> list[TraceEvent]:
        """Return the last n events (optionally equality-filtered), oldest first."""

    @abstractmethod
    def for_run(self, run_id: str) -> list[TraceEvent]:
        """Return every event tagged with run_id, in ledger order."""

    @abstractmethod
    def on_change(self, callback: TraceListener) -> Callable[[], None]:
        """Subscribe to appends made through this ledger; returns an unsubscribe callable."""


class IntentLog(ABC):
    @abstractmethod
    def append(self, intent: Intent) -> None:
        """Append a deferred candidate change for out-of-band review."""

    @abstractmethod
    def tail(self, n: int) -> list[dict[str, Any]]:
        """Return the last n intent records, oldest first."""


class ContextStore(ABC):
    @abstractmethod
    def ingest(self, text: str) -> ContextRef:
        """Store text under its content hash. Idempotent."""

    @abstractmethod
    def resolve(self, ref: str) -> str:
        """Return stored text for an id or ctx:// URI. Must raise NotFoundError if unknown."""

    @abstractmethod
    def exists(self, ref: str) -> bool:
        """True if the id or ctx:// URI is known."""
