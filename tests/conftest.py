"""Shared test fixtures."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from upkeep.tasks.models import RunContext

GitFn = Callable[..., str]


@pytest.fixture()
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate git from the developer's config: fixed identity, local file transport allowed."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    home = tmp_path / "home"
    home.mkdir()
    global_config = home / ".gitconfig"
    global_config.write_text(
        "[user]\n"
        "\tname = Upkeep Test\n"
        "\temail = upkeep@example.com\n"
        "[protocol \"file\"]\n"
        "\tallow = always\n"
        "[init]\n"
        "\tdefaultBranch = main\n"
        "[advice]\n"
        "\tdetachedHead = false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for name in ("GIT_DIR", "GIT_WORK_TREE", "GIT_INDEX_FILE"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture()
def git(git_env: Path) -> GitFn:
    """Run a git command and return its stripped stdout."""

    def _git(*args: str, cwd: Path | None = None) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return completed.stdout.strip()

    return _git


@pytest.fixture()
def commit(git: GitFn) -> Callable[..., str]:
    """Write files into a working tree, commit them and return the new HEAD."""

    def _commit(worktree: Path, files: dict[str, str], message: str = "update") -> str:
        for name, content in files.items():
            target = worktree / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        git("add", "--all", cwd=worktree)
        git("commit", "--quiet", "-m", message, cwd=worktree)
        return git("rev-parse", "HEAD", cwd=worktree)

    return _commit


@pytest.fixture()
def upstream(tmp_path: Path, git: GitFn, commit: Callable[..., str]) -> tuple[Path, Path]:
    """A bare `remote.git` with one commit on main, plus a `seed` clone used to push to it."""

    remote = tmp_path / "remote.git"
    git("init", "--quiet", "--bare", "--initial-branch=main", str(remote))
    seed = tmp_path / "seed"
    git("clone", "--quiet", str(remote), str(seed))
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=seed)
    commit(seed, {"README.md": "hello\n"}, "initial")
    git("push", "--quiet", "--set-upstream", "origin", "main", cwd=seed)
    return remote, seed


@pytest.fixture()
def run_context(tmp_path: Path) -> RunContext:
    return RunContext(concurrency_limit=4, backup_root=tmp_path / "backups")
