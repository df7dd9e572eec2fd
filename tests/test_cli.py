from __future__ import annotations

import io
import json
import sys
from pathlib import Path

import pytest

from config.settings import load_runtime_config
from kernel.cli import build_kernel, main

CONFIG_DIR = Path(__file__).resolve().parents[1] / "runtime" / "core" / "config"


def _runtime_yaml(tmp_path: Path) -> Path:
    path = tmp_path / "runtime.yaml"
    path.write_text(
        "paths:\n"
        f"  repo_root: {tmp_path}\n"
        "policy:\n"
        f"  gamma: {CONFIG_DIR / 'gamma.yaml'}\n"
        f"  cost: {CONFIG_DIR / 'cost.yaml'}\n",
        encoding="utf-8",
    )
    return path


def test_build_kernel_wires_configured_paths(tmp_path: Path) -> None:
    comps = build_kernel(load_runtime_config(_runtime_yaml(tmp_path)))
    assert comps.ledger.path == tmp_path.resolve() / "ops" / "TRACE.jsonl"
    assert comps.context_store.paste_dir == tmp_path.resolve() / "assets" / "paste"
    assert comps.policy.threshold("safe") == 0.6


def test_paste_command_prints_uri(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(sys, "stdin", io.StringIO("pasted notes"))
    assert main(["--config", str(_runtime_yaml(tmp_path)), "paste"]) == 0
    uri, path = capsys.readouterr().out.split()
    assert uri.startswith("ctx://paste/")
    assert Path(path).read_text(encoding="utf-8") == "pasted notes"


def test_run_command_prints_result_json(tmp_path: Path, capsys) -> None:
    cfg = _runtime_yaml(tmp_path)
    code = main(["--config", str(cfg), "run", "--goal=Tidy docs", "--mode=safe", "--ctx="])
    result = json.loads(capsys.readouterr().out)
    assert code == 0
    assert result["goal"] == "Tidy docs"
    assert result["decision"] == "COMMIT"
    assert result["gamma"] == 0.75
    trace = (tmp_path / "ops" / "TRACE.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(trace[-1])["step"] == "end"


def test_watch_command_honours_max_runs(tmp_path: Path, capsys) -> None:
    cfg = _runtime_yaml(tmp_path)
    assert main(["--config", str(cfg), "watch", "--goal=Tidy", "--interval=0", "--max-runs=2", "--no-update"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["runs"] == 2
    assert summary["stopped"] == "max_runs_reached"


def test_update_command_reports_failure_outside_a_checkout(tmp_path: Path, capsys) -> None:
    assert main(["--config", str(_runtime_yaml(tmp_path)), "update"]) == 1
    assert "update failed" in capsys.readouterr().err
