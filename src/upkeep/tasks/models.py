"""Domain models for tasks, their results and the per-run context."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from upkeep.executors.git.retry import RetryPolicy
from upkeep.tasks.resources import BackupDirectory, PathLocks


class TaskKind(str, Enum):
    """Closed set of task payload kinds."""

    COMMAND = "command"
    LINK = "link"
    GIT = "git"


class TaskStatus(str, Enum):
    """Outcome of one task execution."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class CommandPayload:
    """Optional check command plus the run command."""

    run_command: tuple[str, ...]
    check_command: tuple[str, ...] | None = None
    working_directory: Path | None = None


@dataclass(frozen=True, slots=True)
class GitRepoSpec:
    """Where a repository lives locally and where it comes from."""

    local_path: Path
    remote_url: str
    fallback_remote: str | None = None
    branch: str | None = None
    prune: bool = False
    recurse_submodules: bool = True
    remote_name: str = "origin"


@dataclass(frozen=True, slots=True)
class LinkSpec:
    """Mirror `from_directory` into `to_directory` as symlinks.

    `backup_root` is the run-wide root that every link task of the run shares.
    """

    from_directory: Path
    to_directory: Path
    backup_root: Path


TaskPayload = CommandPayload | LinkSpec | GitRepoSpec


@dataclass(frozen=True, slots=True)
class Task:
    """Immutable, fully resolved task handed to the scheduler."""

    name: str
    payload: TaskPayload
    env: Mapping[str, str] = field(default_factory=dict, hash=False, compare=False)
    bootstrap: bool = False
    description: str | None = None
    needs_sudo: bool = False

    @property
    def kind(self) -> TaskKind:
        if isinstance(self.payload, CommandPayload):
            return TaskKind.COMMAND
        if isinstance(self.payload, LinkSpec):
            return TaskKind.LINK
        if isinstance(self.payload, GitRepoSpec):
            return TaskKind.GIT
        raise TypeError(f"Unsupported task payload: {type(self.payload).__name__}")


@dataclass(slots=True)
class TaskResult:
    """Result of one task; `aborted` marks tasks never started after a bootstrap failure."""

    task_name: str
    status: TaskStatus
    error: Exception | None = None
    duration_seconds: float = 0.0
    aborted: bool = False
    detail: str | None = None

    def __post_init__(self) -> None:
        if (self.status == TaskStatus.FAILED) != (self.error is not None):
            raise ValueError("TaskResult.error must be set if and only if status is FAILED.")

    @classmethod
    def not_run(cls, task_name: str) -> TaskResult:
        return cls(task_name=task_name, status=TaskStatus.SKIPPED, aborted=True)


def default_concurrency() -> int:
    return os.cpu_count() or 1


def default_backup_root() -> Path:
    return Path.home() / "backup"


def format_run_stamp(started_at: datetime) -> str:
    # ':' is not allowed in file names on every platform.
    return started_at.strftime("%Y-%m-%dT%H-%M-%SZ")


@dataclass(slots=True)
class RunContext:
    """Process-wide state for a single invocation, threaded through every executor."""

    keep_going: bool = False
    concurrency_limit: int = field(default_factory=default_concurrency)
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    fetch_warning_seconds: float = 60.0
    slow_task_warning_seconds: float = 60.0
    git_binary: str = "git"
    backup_root: Path = field(default_factory=default_backup_root)
    backup: BackupDirectory = field(init=False)
    git_locks: PathLocks = field(init=False)
    link_locks: PathLocks = field(init=False)

    def __post_init__(self) -> None:
        if self.concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be > 0.")
        self.backup = BackupDirectory(self.backup_root, self.run_stamp)
        self.git_locks = PathLocks(overlapping=False)
        self.link_locks = PathLocks(overlapping=True)

    @property
    def run_stamp(self) -> str:
        return format_run_stamp(self.started_at)
