"""Pytest configuration for the nstar core runtime (flat runtime/core layout)."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

CORE_ROOT = Path(__file__).resolve().parents[1] / "runtime" / "core"
if str(CORE_ROOT) not in sys.path:
    sys.path.insert(0, str(CORE_ROOT))

from config.settings import CostConfig, GammaConfig  # noqa: E402
from policy.gate import PolicyEngine  # noqa: E402
from storage.jsonl import JsonlIntentLog, JsonlTraceLedger  # noqa: E402
from storage.paste import FileContextStore  # noqa: E402


@pytest.fixture
def policy() -> PolicyEngine:
    return PolicyEngine(gamma=GammaConfig(), cost=CostConfig())


@pytest.fixture
def ledger(tmp_path: Path) -> JsonlTraceLedger:
    return JsonlTraceLedger(tmp_path / "ops" / "TRACE.jsonl")


@pytest.fixture
def intents(tmp_path: Path) -> JsonlIntentLog:
    return JsonlIntentLog(tmp_path / "state" / "intents" / "pr.jsonl")


@pytest.fixture
def context_store(tmp_path: Path) -> FileContextStore:
    return FileContextStore(tmp_path / "assets" / "paste")
