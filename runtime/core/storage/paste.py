"""Content-addressed store for pasted/ingested context text.

Blobs live at `<paste_dir>/<id>.md` where id is the first 12 hex chars of the
SHA-1 of the UTF-8 text. Identical text always maps to the same id and the
same bytes, so concurrent identical ingests need no coordination.
"""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

from errors import ContractViolationError, NotFoundError
from storage.interfaces import CONTEXT_URI_PREFIX, ContextRef, ContextStore
from utils import sha1_hex

ID_WIDTH = 12
_ID_RE = re.compile(r"^[0-9a-f]{%d}$" % ID_WIDTH)


def context_id(text: str) -> str:
    return sha1_hex(text)[:ID_WIDTH]


def parse_context_ref(ref: str) -> str:
    """Accept a bare id or a ctx://paste/<id> URI; return the id."""
    raw = ref.strip()
    if raw.startswith(CONTEXT_URI_PREFIX):
        raw = raw[len(CONTEXT_URI_PREFIX):]
    elif "://" in raw:
        raise ContractViolationError(f"Unsupported context reference: {ref}", code="INVALID_CONTEXT_REF")
    if not _ID_RE.match(raw):
        raise ContractViolationError(f"Malformed context id: {ref}", code="INVALID_CONTEXT_REF")
    return raw


class FileContextStore(ContextStore):
    def __init__(self, paste_dir: Path):
        self.paste_dir = paste_dir

    def _path_for(self, ctx_id: str) -> Path:
        return self.paste_dir / f"{ctx_id}.md"

    def ingest(self, text: str) -> ContextRef:
        if not text:
            raise ContractViolationError("Cannot ingest empty text", code="EMPTY_CONTEXT")
        ctx_id = context_id(text)
        path = self._path_for(ctx_id)
        self.paste_dir.mkdir(parents=True, exist_ok=True)

        # Write-then-rename so a concurrent reader never sees a half-written blob.
        fd, tmp = tempfile.mkstemp(prefix=f".{ctx_id}.", dir=str(self.paste_dir))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(text.encode("utf-8"))
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return ContextRef(id=ctx_id, path=path)

    def resolve(self, ref: str) -> str:
        ctx_id = parse_context_ref(ref)
        path = self._path_for(ctx_id)
        if not path.exists():
            raise NotFoundError("ContextRef", ctx_id)
        return path.read_bytes().decode("utf-8")

    def exists(self, ref: str) -> bool:
        try:
            ctx_id = parse_context_ref(ref)
        except ContractViolationError:
            return False
        return self._path_for(ctx_id).exists()
