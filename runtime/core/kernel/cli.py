"""Kernel worker entrypoint.

    python -m kernel.cli run --goal="..." [--mode=safe|fast|cheap] [--ctx=ctx://paste/<id>,...]
    python -m kernel.cli paste < notes.md
    python -m kernel.cli watch --goal="..." [--interval=600] [--max-runs=N] [--no-update]
    python -m kernel.cli update

`run` prints the RunResult as JSON on stdout (logs go to stderr), which is
what the orchestration server parses as the job result.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path

from config.logging import apply_logging_config
from config.settings import RuntimeConfig, default_config_paths, load_cost_config, load_gamma_config, load_runtime_config
from kernel.apply import GitPatchApplier
from kernel.evidence import EvidenceCollector
from kernel.loop import DECISION_ERROR, KernelRunLoop
from kernel.planner import ReadmeTouchPlanner
from kernel.update import GitUpdater
from kernel.watch import WatchLoop
from policy.gate import PolicyEngine
from storage.jsonl import JsonlIntentLog, JsonlTraceLedger
from storage.paste import FileContextStore


@dataclass(frozen=True)
class KernelComponents:
    config: RuntimeConfig
    policy: PolicyEngine
    ledger: JsonlTraceLedger
    context_store: FileContextStore
    loop: KernelRunLoop


def build_kernel(cfg: RuntimeConfig) -> KernelComponents:
    policy = PolicyEngine(gamma=load_gamma_config(cfg.policy.gamma_config), cost=load_cost_config(cfg.policy.cost_config))
    ledger = JsonlTraceLedger(cfg.paths.ledger_path)
    ctx = FileContextStore(cfg.paths.paste_dir)
    loop = KernelRunLoop(
        policy=policy,
        ledger=ledger,
        context_store=ctx,
        intents=JsonlIntentLog(cfg.paths.intents_path),
        planner=ReadmeTouchPlanner(cfg.paths.repo_root, estimated_cost=cfg.kernel.estimated_cost),
        evidence=EvidenceCollector(policy=policy, kernel=cfg.kernel, repo_root=cfg.paths.repo_root),
        applier=GitPatchApplier(cfg.paths.repo_root),
        ops_dir=cfg.paths.ops_dir,
    )
    return KernelComponents(config=cfg, policy=policy, ledger=ledger, context_store=ctx, loop=loop)


def _read_stdin() -> str:
    if sys.stdin is None or sys.stdin.isatty():
        return ""
    return sys.stdin.read()


def _split_refs(raw: str | None) -> list[str]:
    return [r.strip() for r in (raw or "").split(",") if r.strip()]


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="nstar", description="nstar kernel worker")
    p.add_argument("--config", type=Path, default=None, help="runtime.yaml path")
    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="run one kernel pass")
    run.add_argument("--goal", default=None)
    run.add_argument("--mode", default="fast")
    run.add_argument("--ctx", default=None, help="comma-separated context refs")
    run.add_argument("words", nargs="*")

    sub.add_parser("paste", help="ingest stdin into the context store")

    watch = sub.add_parser("watch", help="re-run the kernel on an interval")
    watch.add_argument("--goal", required=True)
    watch.add_argument("--mode", default="fast")
    watch.add_argument("--ctx", default=None)
    watch.add_argument("--interval", type=float, default=None)
    watch.add_argument("--max-runs", type=int, default=None)
    watch.add_argument("--no-update", action="store_true", help="skip the fast-forward pull before each pass")

    sub.add_parser("update", help="git fetch and fast-forward from upstream")
    return p


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    runtime_path, logging_path = default_config_paths()
    if args.config is not None:
        runtime_path = args.config
    apply_logging_config(logging_path)
    comps = build_kernel(load_runtime_config(runtime_path))

    if args.cmd == "paste":
        text = _read_stdin()
        if not text:
            print("no input on stdin", file=sys.stderr)
            return 1
        ref = comps.context_store.ingest(text)
        print(f"{ref.uri}  {ref.path}")
        return 0

    if args.cmd == "update":
        outcome = GitUpdater(comps.config.paths.repo_root).pull()
        if not outcome.ok:
            print(f"update failed: {outcome.error}", file=sys.stderr)
            return 1
        print("updated" if outcome.updated else "up-to-date")
        return 0

    if args.cmd == "run":
        goal = args.goal or " ".join(args.words) or "Tiny maintenance update"
        refs = _split_refs(args.ctx)
        if args.ctx is None:
            text = _read_stdin()
            if text:
                refs.append(comps.context_store.ingest(text).uri)
        result = asyncio.run(comps.loop.run(goal, args.mode, refs))
        print(json.dumps(result.as_dict(), indent=2, ensure_ascii=False))
        return 1 if result.decision == DECISION_ERROR else 0

    watch_cfg = comps.config.watch
    watcher = WatchLoop(
        kernel=comps.loop,
        policy=comps.policy,
        ledger=comps.ledger,
        goal=args.goal,
        mode=args.mode,
        ctx_refs=tuple(_split_refs(args.ctx)),
        interval_seconds=args.interval if args.interval is not None else watch_cfg.interval_seconds,
        max_runs=args.max_runs if args.max_runs is not None else watch_cfg.max_runs,
        estimated_cost=comps.config.kernel.estimated_cost,
        updater=None if args.no_update or not watch_cfg.auto_update else GitUpdater(comps.config.paths.repo_root),
    )
    summary = asyncio.run(watcher.run())
    print(json.dumps({"runs": summary.runs, "spent_today": summary.spent_today, "stopped": summary.stopped_reason}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
