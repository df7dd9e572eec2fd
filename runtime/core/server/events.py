"""Stream events pushed to subscribers.

Event kinds form a closed set; anything else parsed off the wire becomes
`EventKind.UNKNOWN` with the original tag preserved in `raw_type`.

Wire format (Server-Sent Events):

    data: {"data": {...}, "type": "job_stdout"}\\n\\n
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from storage.interfaces import TraceEvent
from utils import json_dumps, now_iso


class EventKind(str, Enum):
    CONNECTED = "connected"
    TRACE = "trace"
    JOB_START = "job_start"
    JOB_STDOUT = "job_stdout"
    JOB_STDERR = "job_stderr"
    JOB_COMPLETE = "job_complete"
    JOB_ERROR = "job_error"
    SHUTDOWN = "shutdown"
    UNKNOWN = "unknown"

    @classmethod
    def from_tag(cls, tag: str) -> "EventKind":
        try:
            kind = cls(tag)
        except ValueError:
            return cls.UNKNOWN
        return kind


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    data: dict[str, Any] = field(default_factory=dict)
    raw_type: str | None = None

    @property
    def type(self) -> str:
        if self.kind is EventKind.UNKNOWN and self.raw_type:
            return self.raw_type
        return self.kind.value

    @property
    def job_id(self) -> str | None:
        v = self.data.get("job_id")
        return v if isinstance(v, str) else None

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data}

    def encode(self) -> str:
        return f"data: {json_dumps(self.to_message())}\n\n"

    @classmethod
    def parse(cls, message: Any) -> "StreamEvent":
        if isinstance(message, (str, bytes)):
            message = json.loads(message)
        if not isinstance(message, dict):
            return cls(kind=EventKind.UNKNOWN, data={"value": message})
        tag = str(message.get("type", ""))
        data = message.get("data")
        if not isinstance(data, dict):
            data = {} if data is None else {"value": data}
        kind = EventKind.from_tag(tag)
        return cls(kind=kind, data=data, raw_type=tag if kind is EventKind.UNKNOWN else None)

    # Constructors for the known kinds.

    @classmethod
    def connected(cls) -> "StreamEvent":
        return cls(EventKind.CONNECTED, {"timestamp": now_iso()})

    @classmethod
    def trace(cls, event: TraceEvent) -> "StreamEvent":
        return cls(EventKind.TRACE, event.to_record())

    @classmethod
    def job_start(cls, job: dict[str, Any]) -> "StreamEvent":
        return cls(EventKind.JOB_START, {**job, "timestamp": now_iso()})

    @classmethod
    def job_output(cls, job_id: str, stream: str, chunk: str) -> "StreamEvent":
        kind = EventKind.JOB_STDERR if stream == "stderr" else EventKind.JOB_STDOUT
        return cls(kind, {"job_id": job_id, "chunk": chunk})

    @classmethod
    def job_complete(cls, payload: dict[str, Any]) -> "StreamEvent":
        return cls(EventKind.JOB_COMPLETE, payload)

    @classmethod
    def job_error(cls, payload: dict[str, Any]) -> "StreamEvent":
        return cls(EventKind.JOB_ERROR, payload)

    @classmethod
    def shutdown(cls) -> "StreamEvent":
        return cls(EventKind.SHUTDOWN, {"timestamp": now_iso()})
