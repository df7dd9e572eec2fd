from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from kernel.update import GitUpdater

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

IDENTITY = ("-c", "user.name=nstar", "-c", "user.email=nstar@example.invalid", "-c", "commit.gpgsign=false")


def _git(cwd: Path, *args: str) -> str:
    return subprocess.run(["git", *IDENTITY, *args], cwd=cwd, check=True, capture_output=True, text=True).stdout


def _commit(repo: Path, name: str, text: str) -> None:
    (repo / name).write_text(text, encoding="utf-8")
    _git(repo, "add", name)
    _git(repo, "commit", "-q", "-m", f"add {name}")


@pytest.fixture
def upstream_and_clone(tmp_path: Path) -> tuple[Path, Path]:
    upstream = tmp_path / "upstream"
    upstream.mkdir()
    _git(upstream, "init", "-q")
    _commit(upstream, "README.md", "# Demo\n")
    clone = tmp_path / "clone"
    _git(tmp_path, "clone", "-q", str(upstream), str(clone))
    return upstream, clone


def test_up_to_date_checkout_is_left_alone(upstream_and_clone) -> None:
    _, clone = upstream_and_clone
    outcome = GitUpdater(clone).pull()
    assert outcome.ok
    assert (outcome.behind, outcome.updated) == (0, False)


def test_behind_checkout_is_fast_forwarded(upstream_and_clone) -> None:
    upstream, clone = upstream_and_clone
    _commit(upstream, "NOTES.md", "new upstream notes\n")

    outcome = GitUpdater(clone).pull()

    assert outcome.ok, outcome.error
    assert (outcome.ahead, outcome.behind, outcome.updated) == (0, 1, True)
    assert (clone / "NOTES.md").read_text(encoding="utf-8") == "new upstream notes\n"


def test_repo_without_upstream_reports_error(tmp_path: Path) -> None:
    _git(tmp_path, "init", "-q")
    _commit(tmp_path, "README.md", "# Demo\n")

    outcome = GitUpdater(tmp_path).pull()

    assert not outcome.ok
    assert not outcome.updated
