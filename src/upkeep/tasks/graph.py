"""Task Graph Builder: raw configuration in, validated bootstrap and main phases out."""

from __future__ import annotations

import logging
import os
import re
import shlex
from collections.abc import Collection, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from upkeep.errors import ConfigError
from upkeep.tasks.env import expand, inherited_env, resolve_env
from upkeep.tasks.loader import RawConfig
from upkeep.tasks.models import CommandPayload, GitRepoSpec, LinkSpec, Task, TaskKind, TaskPayload
from upkeep.tasks.resources import normalize_path

logger = logging.getLogger(__name__)

TASK_KEYS = frozenset(
    {
        "name",
        "bootstrap",
        "description",
        "env",
        "auto_run",
        "needs_sudo",
        "check_command",
        "run_command",
        "working_directory",
        "link",
        "git",
    },
)
LINK_KEYS = frozenset({"from", "to", "backup"})
GIT_KEYS = frozenset(
    {"path", "url", "fallback_url", "branch", "prune", "recurse_submodules", "remote"},
)
DEFAULT_REMOTE = "origin"
_GITHUB_SHORTHAND = re.compile(r"^[\w.-]+/[\w.-]+$")


@dataclass(frozen=True, slots=True)
class TaskGraph:
    """Bootstrap tasks in declaration order plus the unordered main phase.

    `backup_root` is the single backup root shared by every link task of the run.
    """

    bootstrap: tuple[Task, ...] = ()
    main: tuple[Task, ...] = ()
    backup_root: Path | None = None

    def __iter__(self) -> Iterator[Task]:
        yield from self.bootstrap
        yield from self.main

    def __len__(self) -> int:
        return len(self.bootstrap) + len(self.main)

    def only_bootstrap(self) -> TaskGraph:
        return TaskGraph(bootstrap=self.bootstrap, backup_root=self.backup_root)


@dataclass(frozen=True, slots=True)
class _Entry:
    name: str
    kind: TaskKind
    data: Mapping[str, Any]
    bootstrap: bool
    auto_run: bool


def build_task_graph(  # noqa: PLR0913
    config: RawConfig,
    *,
    environ: Mapping[str, str] | None = None,
    home: Path | None = None,
    filter_names: Collection[str] = (),
    exclude_names: Collection[str] = (),
    kinds: Collection[TaskKind] | None = None,
    include_manual: bool = False,
) -> TaskGraph:
    """Validate every task entry and split the selected ones into phases.

    Every entry is checked structurally (name, uniqueness, keys, exactly one payload).
    Entries of the requested `kinds` are then fully built, which expands every
    environment reference; an unresolved one is a `ConfigError` naming the task.
    With `filter_names` only those tasks are selected (this is also the only way an
    `auto_run: false` task runs, unless `include_manual` is set); `exclude_names`
    removes tasks afterwards.
    """

    environ = os.environ if environ is None else environ
    home = Path.home() if home is None else home

    entries = _parse_entries(config)
    known = {entry.name for entry in entries}
    for label, names in (("--tasks", filter_names), ("--exclude", exclude_names)):
        unknown = sorted(set(names) - known)
        if unknown:
            raise ConfigError(
                f"Unknown task name(s) in {label}: {', '.join(unknown)}",
                remediation="Run `upkeep list` to see the configured tasks.",
            )

    global_env = resolve_env(config.env, inherited_env(config.inherit_env, environ), home=home)
    backup_root = _backup_root(config, global_env=global_env, home=home)

    bootstrap: list[Task] = []
    main: list[Task] = []
    for entry in entries:
        if kinds is not None and entry.kind not in kinds:
            continue
        task = _build_task(
            entry,
            config=config,
            global_env=global_env,
            home=home,
            backup_root=backup_root,
        )
        selected = _selected(
            entry,
            filter_names=filter_names,
            exclude_names=exclude_names,
            include_manual=include_manual,
        )
        if not selected:
            continue
        (bootstrap if task.bootstrap else main).append(task)

    graph = TaskGraph(bootstrap=tuple(bootstrap), main=tuple(main), backup_root=backup_root)
    logger.debug(
        "Task graph: %d bootstrap, %d main (of %d configured)",
        len(graph.bootstrap),
        len(graph.main),
        len(entries),
    )
    return graph


def _selected(
    entry: _Entry,
    *,
    filter_names: Collection[str],
    exclude_names: Collection[str],
    include_manual: bool,
) -> bool:
    if entry.name in exclude_names:
        return False
    if filter_names:
        return entry.name in filter_names
    return entry.auto_run or include_manual


def _parse_entries(config: RawConfig) -> list[_Entry]:
    entries: list[_Entry] = []
    seen: set[str] = set()
    for index, data in enumerate(config.tasks):
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError(f"Task entry #{index + 1} has no name")
        if name in seen:
            raise ConfigError("duplicate task name", task_name=name)
        seen.add(name)

        unknown = sorted(set(data) - TASK_KEYS)
        if unknown:
            raise ConfigError(f"unknown keys: {', '.join(map(str, unknown))}", task_name=name)

        has_command = "run_command" in data or "check_command" in data
        present = [
            kind
            for kind, flag in (
                (TaskKind.COMMAND, has_command),
                (TaskKind.LINK, "link" in data),
                (TaskKind.GIT, "git" in data),
            )
            if flag
        ]
        if len(present) != 1:
            raise ConfigError(
                "a task must define exactly one of run_command, link or git",
                task_name=name,
            )
        if has_command and "run_command" not in data:
            raise ConfigError("check_command requires a run_command", task_name=name)

        entries.append(
            _Entry(
                name=name,
                kind=present[0],
                data=data,
                bootstrap=_bool(data, "bootstrap", default=False, task_name=name),
                auto_run=_bool(data, "auto_run", default=True, task_name=name),
            ),
        )
    return entries


def _build_task(
    entry: _Entry,
    *,
    config: RawConfig,
    global_env: Mapping[str, str],
    home: Path,
    backup_root: Path,
) -> Task:
    raw_env = entry.data.get("env") or {}
    if not isinstance(raw_env, Mapping):
        raise ConfigError("'env' must be a mapping", task_name=entry.name)
    env = resolve_env(
        {str(key): "" if value is None else str(value) for key, value in raw_env.items()},
        global_env,
        home=home,
        task_name=entry.name,
    )

    builder = _Expander(env=env, home=home, base_dir=config.base_dir, task_name=entry.name)
    payload: TaskPayload
    if entry.kind == TaskKind.COMMAND:
        payload = _command_payload(entry, builder, config=config)
    elif entry.kind == TaskKind.LINK:
        payload = _link_payload(entry, builder, backup_root=backup_root)
    else:
        payload = _git_payload(entry, builder)

    description = entry.data.get("description")
    return Task(
        name=entry.name,
        payload=payload,
        env=env,
        bootstrap=entry.bootstrap,
        description=None if description is None else str(description),
        needs_sudo=_bool(entry.data, "needs_sudo", default=False, task_name=entry.name),
    )


@dataclass(frozen=True, slots=True)
class _Expander:
    env: Mapping[str, str]
    home: Path
    base_dir: Path
    task_name: str

    def text(self, value: Any, key: str) -> str:
        if not isinstance(value, str | int | float) or isinstance(value, bool):
            raise ConfigError(f"'{key}' must be a string", task_name=self.task_name)
        return expand(str(value), self.env, home=self.home, task_name=self.task_name)

    def path(self, value: Any, key: str) -> Path:
        path = Path(self.text(value, key))
        return path if path.is_absolute() else self.base_dir / path

    def argv(self, value: Any, key: str) -> tuple[str, ...]:
        if isinstance(value, str):
            try:
                tokens = shlex.split(value)
            except ValueError as error:
                raise ConfigError(
                    f"cannot parse '{key}': {error}",
                    task_name=self.task_name,
                ) from error
        elif isinstance(value, list):
            tokens = value
        else:
            raise ConfigError(
                f"'{key}' must be a list of arguments or a command string",
                task_name=self.task_name,
            )
        argv = tuple(self.text(token, key) for token in tokens)
        if not argv:
            raise ConfigError(f"'{key}' must not be empty", task_name=self.task_name)
        return argv


def _command_payload(entry: _Entry, builder: _Expander, *, config: RawConfig) -> CommandPayload:
    data = entry.data
    check = data.get("check_command")
    working_directory = data.get("working_directory")
    return CommandPayload(
        run_command=builder.argv(data["run_command"], "run_command"),
        check_command=None if check is None else builder.argv(check, "check_command"),
        working_directory=(
            config.base_dir
            if working_directory is None
            else builder.path(working_directory, "working_directory")
        ),
    )


def _link_payload(entry: _Entry, builder: _Expander, *, backup_root: Path) -> LinkSpec:
    data = _sub_mapping(entry, "link", LINK_KEYS)
    for required in ("from", "to"):
        if data.get(required) is None:
            raise ConfigError(f"link.{required} is required", task_name=entry.name)
    backup = data.get("backup")
    own_root = None if backup is None else builder.path(backup, "link.backup")
    if own_root is not None and normalize_path(own_root) != normalize_path(backup_root):
        raise ConfigError(
            f"link.backup differs from the run's backup directory {backup_root}",
            task_name=entry.name,
            remediation="Set the top-level backup_dir instead, it is shared by all link tasks.",
        )
    return LinkSpec(
        from_directory=builder.path(data["from"], "link.from"),
        to_directory=builder.path(data["to"], "link.to"),
        backup_root=backup_root,
    )


def _backup_root(config: RawConfig, *, global_env: Mapping[str, str], home: Path) -> Path:
    if config.backup_dir is None:
        return home / "backup"
    path = Path(expand(config.backup_dir, global_env, home=home))
    return path if path.is_absolute() else config.base_dir / path


def _git_payload(entry: _Entry, builder: _Expander) -> GitRepoSpec:
    data = _sub_mapping(entry, "git", GIT_KEYS)
    for required in ("path", "url"):
        if data.get(required) is None:
            raise ConfigError(f"git.{required} is required", task_name=entry.name)
    remote_url, derived_fallback = expand_remote_url(builder.text(data["url"], "git.url"))
    fallback = data.get("fallback_url")
    branch = data.get("branch")
    return GitRepoSpec(
        local_path=builder.path(data["path"], "git.path"),
        remote_url=remote_url,
        fallback_remote=(
            derived_fallback if fallback is None else builder.text(fallback, "git.fallback_url")
        ),
        branch=None if branch is None else builder.text(branch, "git.branch"),
        prune=_bool(data, "prune", default=False, task_name=entry.name),
        recurse_submodules=_bool(data, "recurse_submodules", default=True, task_name=entry.name),
        remote_name=builder.text(data.get("remote", DEFAULT_REMOTE), "git.remote"),
    )


def expand_remote_url(url: str) -> tuple[str, str | None]:
    """Expand `owner/repo` shorthand into an SSH primary and an HTTPS fallback remote."""

    if _GITHUB_SHORTHAND.match(url) and not url.startswith("."):
        repo = url.removesuffix(".git")
        return f"git@github.com:{repo}.git", f"https://github.com/{repo}.git"
    return url, None


def _sub_mapping(entry: _Entry, key: str, allowed: frozenset[str]) -> Mapping[str, Any]:
    data = entry.data[key]
    if not isinstance(data, Mapping):
        raise ConfigError(f"'{key}' must be a mapping", task_name=entry.name)
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(
            f"unknown {key} keys: {', '.join(map(str, unknown))}",
            task_name=entry.name,
        )
    return data


def _bool(data: Mapping[str, Any], key: str, *, default: bool, task_name: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false", task_name=task_name)
    return value
