"""Configuration loader for the core runtime.

Rules:
- runtime.yaml is required: fail closed when it is missing or invalid.
- gamma.yaml / cost.yaml never fail startup: any problem falls back to the
  hardcoded defaults with a warning, so gate evaluation is always available.
- Relative paths in runtime.yaml resolve against runtime.yaml's directory,
  except `paths.*` entries which resolve against `paths.repo_root`.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from errors import ConfigurationError, SchemaValidationError
from validation.schema_validator import SchemaValidator

logger = logging.getLogger(__name__)

SIGNAL_KEYS = ("tests_pass", "retrieval_cited", "cost_ok", "diff_tiny")

DEFAULT_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {"tests_pass": 0.4, "retrieval_cited": 0.25, "cost_ok": 0.2, "diff_tiny": 0.15}
)
DEFAULT_THRESHOLDS: Mapping[str, float] = MappingProxyType({"safe": 0.6, "fast": 0.5, "cheap": 0.4})


@dataclass(frozen=True)
class GammaConfig:
    weights: Mapping[str, float] = field(default_factory=lambda: DEFAULT_WEIGHTS)
    thresholds: Mapping[str, float] = field(default_factory=lambda: DEFAULT_THRESHOLDS)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GammaConfig":
        weights = {k: float(raw["weights"][k]) for k in SIGNAL_KEYS}
        thresholds = {str(k): float(v) for k, v in raw["thresholds"].items()}
        return cls(weights=MappingProxyType(weights), thresholds=MappingProxyType(thresholds))


@dataclass(frozen=True)
class CostConfig:
    per_run_ceiling: float = 3.0
    per_day_ceiling: float = 25.0
    currency: str = "GBP"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CostConfig":
        return cls(
            per_run_ceiling=float(raw["per_run_ceiling"]),
            per_day_ceiling=float(raw["per_day_ceiling"]),
            currency=str(raw.get("currency", "GBP")),
        )


@dataclass(frozen=True)
class ServiceConfig:
    host: str
    port: int


@dataclass(frozen=True)
class PathsConfig:
    ledger_path: Path
    intents_path: Path
    paste_dir: Path
    ops_dir: Path
    repo_root: Path


@dataclass(frozen=True)
class PolicyPaths:
    gamma_config: Path
    cost_config: Path


@dataclass(frozen=True)
class KernelConfig:
    estimated_cost: float = 0.02
    diff_tiny_max_lines: int = 40
    test_command: tuple[str, ...] = ()
    test_timeout_seconds: float = 600.0


@dataclass(frozen=True)
class WorkerConfig:
    command: tuple[str, ...] = field(default_factory=lambda: (sys.executable, "-m", "kernel.cli"))
    cwd: Path | None = None
    kill_grace_seconds: float = 5.0
    retain_finished_jobs: int = 200


@dataclass(frozen=True)
class StreamConfig:
    subscriber_queue_size: int = 256
    ledger_poll_interval_seconds: float = 0.25


@dataclass(frozen=True)
class WatchConfig:
    interval_seconds: float = 600.0
    max_runs: int = 0  # 0 = bounded only by the daily cost ceiling
    auto_update: bool = True


@dataclass(frozen=True)
class RuntimeConfig:
    service: ServiceConfig
    paths: PathsConfig
    policy: PolicyPaths
    kernel: KernelConfig
    worker: WorkerConfig
    stream: StreamConfig
    watch: WatchConfig
    config_dir: Path


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Missing required config file: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse config file: {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def _as_command(raw: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    if raw is None:
        return default
    if isinstance(raw, str):
        return tuple(raw.split())
    if isinstance(raw, list):
        return tuple(str(x) for x in raw)
    raise ConfigurationError(f"Expected a command string or list, got {type(raw).__name__}")


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = _load_yaml(runtime_config_path)

    service_raw = raw.get("service", {})
    paths_raw = raw.get("paths", {})
    policy_raw = raw.get("policy", {})
    kernel_raw = raw.get("kernel", {})
    worker_raw = raw.get("worker", {})
    stream_raw = raw.get("stream", {})
    watch_raw = raw.get("watch", {})

    service = ServiceConfig(
        host=str(service_raw.get("host", "127.0.0.1")),
        port=int(service_raw.get("port", 8080)),
    )

    repo_root = _resolve_path(cfg_dir, str(paths_raw.get("repo_root", "../../..")))
    paths = PathsConfig(
        ledger_path=_resolve_path(repo_root, str(paths_raw.get("ledger", "ops/TRACE.jsonl"))),
        intents_path=_resolve_path(repo_root, str(paths_raw.get("intents", "state/intents/pr.jsonl"))),
        paste_dir=_resolve_path(repo_root, str(paths_raw.get("paste_dir", "assets/paste"))),
        ops_dir=_resolve_path(repo_root, str(paths_raw.get("ops_dir", "ops"))),
        repo_root=repo_root,
    )

    policy = PolicyPaths(
        gamma_config=_resolve_path(cfg_dir, str(policy_raw.get("gamma", "gamma.yaml"))),
        cost_config=_resolve_path(cfg_dir, str(policy_raw.get("cost", "cost.yaml"))),
    )

    kernel = KernelConfig(
        estimated_cost=float(kernel_raw.get("estimated_cost", 0.02)),
        diff_tiny_max_lines=int(kernel_raw.get("diff_tiny_max_lines", 40)),
        test_command=_as_command(kernel_raw.get("test_command"), ()),
        test_timeout_seconds=float(kernel_raw.get("test_timeout_seconds", 600.0)),
    )

    worker_cwd = worker_raw.get("cwd")
    worker = WorkerConfig(
        command=_as_command(worker_raw.get("command"), (sys.executable, "-m", "kernel.cli")),
        cwd=_resolve_path(cfg_dir, str(worker_cwd)) if worker_cwd else None,
        kill_grace_seconds=float(worker_raw.get("kill_grace_seconds", 5.0)),
        retain_finished_jobs=int(worker_raw.get("retain_finished_jobs", 200)),
    )

    stream = StreamConfig(
        subscriber_queue_size=int(stream_raw.get("subscriber_queue_size", 256)),
        ledger_poll_interval_seconds=float(stream_raw.get("ledger_poll_interval_seconds", 0.25)),
    )

    watch = WatchConfig(
        interval_seconds=float(watch_raw.get("interval_seconds", 600.0)),
        max_runs=int(watch_raw.get("max_runs", 0)),
        auto_update=bool(watch_raw.get("auto_update", True)),
    )

    return RuntimeConfig(
        service=service,
        paths=paths,
        policy=policy,
        kernel=kernel,
        worker=worker,
        stream=stream,
        watch=watch,
        config_dir=cfg_dir,
    )


def _load_gate_document(path: Path, kind: str, validator: SchemaValidator) -> dict[str, Any] | None:
    """Return the validated document, or None when the caller should use defaults."""
    try:
        raw = _load_yaml(path)
        validator.validate(kind, raw)
    except SchemaValidationError as e:
        logger.warning(
            "gate_config_invalid",
            extra={
                "event": "gate_config_invalid",
                "code": kind,
                "details": [f"{v.path}: {v.message}" for v in e.violations],
            },
        )
        return None
    except ConfigurationError as e:
        logger.warning(f"{kind} unavailable ({e}); using defaults", extra={"event": "gate_config_defaulted", "code": kind})
        return None
    return raw


def load_gamma_config(path: Path, *, validator: SchemaValidator | None = None) -> GammaConfig:
    doc = _load_gate_document(path, "GammaConfig", validator or SchemaValidator.load_from_dir())
    if doc is None:
        return GammaConfig()
    return GammaConfig.from_dict(doc)


def load_cost_config(path: Path, *, validator: SchemaValidator | None = None) -> CostConfig:
    doc = _load_gate_document(path, "CostConfig", validator or SchemaValidator.load_from_dir())
    if doc is None:
        return CostConfig()
    return CostConfig.from_dict(doc)


def default_config_paths() -> tuple[Path, Path]:
    # Defaults ship next to this module; env vars override them.
    here = Path(__file__).resolve().parent
    runtime_path = Path(os.environ.get("NSTAR_RUNTIME_CONFIG") or here / "runtime.yaml")
    logging_path = Path(os.environ.get("NSTAR_LOGGING_CONFIG") or here / "logging.yaml")
    return runtime_path, logging_path
