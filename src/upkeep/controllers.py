"""Controllers for the `upkeep` CLI commands."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from upkeep.config import Settings
from upkeep.errors import EXIT_CONFIG_ERROR, EXIT_TASKS_FAILED, CommandError, ConfigError, GitError
from upkeep.executors.git.sync import GitSynchronizer
from upkeep.executors.sudo import SudoKeeper
from upkeep.logging_setup import setup_logging
from upkeep.tasks.graph import TaskGraph, build_task_graph, expand_remote_url
from upkeep.tasks.loader import load_config, resolve_config_path
from upkeep.tasks.models import (
    GitRepoSpec,
    LinkSpec,
    RunContext,
    Task,
    TaskKind,
    default_backup_root,
    format_run_stamp,
)
from upkeep.tasks.scheduler import Scheduler
from upkeep.tasks.summary import aggregate, render_result_line, render_summary_lines

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PATH = Path("dotfiles/.config/upkeep/upkeep.yaml")

LineSink = Callable[[str], None]


@dataclass(slots=True)
class GlobalOptions:
    """Options shared by every subcommand."""

    config_path: Path | None = None
    temp_dir: Path | None = None
    log_level: str | None = None


@dataclass(slots=True)
class RunCommand:
    """CLI input for a full run."""

    options: GlobalOptions = field(default_factory=GlobalOptions)
    tasks: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    bootstrap_only: bool = False
    keep_going: bool = False
    concurrency: int | None = None
    fallback_url: str | None = None
    fallback_path: Path = DEFAULT_FALLBACK_PATH


@dataclass(slots=True)
class LinkCommand:
    """CLI input for linking only: an ad-hoc pair or the task file's link tasks."""

    options: GlobalOptions = field(default_factory=GlobalOptions)
    from_dir: Path | None = None
    to_dir: Path | None = None
    backup_dir: Path | None = None


@dataclass(slots=True)
class ListCommand:
    """CLI input for task listing."""

    options: GlobalOptions = field(default_factory=GlobalOptions)
    tasks: tuple[str, ...] = ()


@dataclass(slots=True)
class GitCommand:
    """CLI input for syncing one ad-hoc repository."""

    git_url: str
    git_path: Path
    options: GlobalOptions = field(default_factory=GlobalOptions)
    branch: str | None = None
    remote: str = "origin"
    prune: bool = False


@dataclass(slots=True)
class CommandResult:
    """Printable lines plus the process exit code."""

    lines: list[str] = field(default_factory=list)
    exit_code: int = 0


class UpkeepCliController:
    """Coordinates task-file loading, scheduling and reporting for CLI commands."""

    def __init__(self, *, sudo: SudoKeeper | None = None) -> None:
        self.sudo = sudo or SudoKeeper()

    def run(self, command: RunCommand, on_line: LineSink | None = None) -> CommandResult:
        started_at = datetime.now(tz=UTC)
        try:
            settings = _settings(command.options)
            if command.concurrency is not None:
                settings.run.concurrency = command.concurrency
            settings.run.keep_going = settings.run.keep_going or command.keep_going
            log_file = _start_logging(settings, format_run_stamp(started_at))
            config_path = self._config_path(settings, command)
            graph = build_task_graph(
                load_config(config_path),
                filter_names=command.tasks,
                exclude_names=command.exclude,
            )
        except ConfigError as error:
            return _config_error(error)

        if command.bootstrap_only:
            graph = graph.only_bootstrap()
        context = _context(settings, started_at=started_at, backup_root=graph.backup_root)
        return self._execute(graph, context, log_file=log_file, on_line=on_line)

    def link(self, command: LinkCommand, on_line: LineSink | None = None) -> CommandResult:
        started_at = datetime.now(tz=UTC)
        try:
            settings = _settings(command.options)
            log_file = _start_logging(settings, format_run_stamp(started_at))
            graph = self._link_graph(settings, command)
        except ConfigError as error:
            return _config_error(error)
        context = _context(settings, started_at=started_at, backup_root=graph.backup_root)
        return self._execute(graph, context, log_file=log_file, on_line=on_line)

    def list_tasks(self, command: ListCommand) -> CommandResult:
        try:
            settings = _settings(command.options)
            graph = build_task_graph(
                load_config(resolve_config_path(settings.config_path)),
                filter_names=command.tasks,
                include_manual=True,
            )
        except ConfigError as error:
            return _config_error(error)

        lines = [_describe_task(task) for task in graph]
        if not lines:
            lines.append("No tasks configured.")
        return CommandResult(lines=lines)

    def git(self, command: GitCommand, on_line: LineSink | None = None) -> CommandResult:
        started_at = datetime.now(tz=UTC)
        try:
            settings = _settings(command.options)
            log_file = _start_logging(settings, format_run_stamp(started_at))
        except ConfigError as error:
            return _config_error(error)

        remote_url, fallback = expand_remote_url(command.git_url)
        task = Task(
            name=f"git:{command.git_path.name}",
            payload=GitRepoSpec(
                local_path=command.git_path.expanduser().absolute(),
                remote_url=remote_url,
                fallback_remote=fallback,
                branch=command.branch,
                prune=command.prune,
                remote_name=command.remote,
            ),
            env=dict(os.environ),
        )
        return self._execute(
            TaskGraph(main=(task,)),
            _context(settings, started_at=started_at),
            log_file=log_file,
            on_line=on_line,
        )

    def _execute(
        self,
        graph: TaskGraph,
        context: RunContext,
        *,
        log_file: Path,
        on_line: LineSink | None,
    ) -> CommandResult:
        lines: list[str] = []
        sink = on_line or lines.append
        logger.info(
            "Starting run %s: %d bootstrap and %d main task(s)",
            context.run_stamp,
            len(graph.bootstrap),
            len(graph.main),
        )
        sudo_tasks = [task.name for task in graph if task.needs_sudo]
        if sudo_tasks:
            logger.debug("Tasks needing sudo: %s", ", ".join(sudo_tasks))
            try:
                self.sudo.acquire()
            except CommandError as error:
                lines.append(f"sudo: {error}")
                lines.append(f"Log file: {log_file}")
                return CommandResult(lines=lines, exit_code=EXIT_TASKS_FAILED)
        try:
            results = Scheduler(context).run(
                graph.bootstrap,
                graph.main,
                on_result=lambda result: sink(render_result_line(result)),
            )
        finally:
            self.sudo.release()
        summary = aggregate(results)
        lines.extend(render_summary_lines(summary))
        if context.backup.created:
            lines.append(f"Backups: {context.backup.path}")
        lines.append(f"Log file: {log_file}")
        return CommandResult(lines=lines, exit_code=summary.exit_code)

    def _config_path(self, settings: Settings, command: RunCommand) -> Path:
        config_path = resolve_config_path(settings.config_path)
        if config_path.exists() or settings.config_path is not None or not command.fallback_url:
            return config_path

        logger.info("Task file %s not found, fetching %s", config_path, command.fallback_url)
        remote_url, fallback = expand_remote_url(command.fallback_url)
        spec = GitRepoSpec(
            local_path=settings.fallback_repo_dir,
            remote_url=remote_url,
            fallback_remote=fallback,
        )
        synchronizer = GitSynchronizer(
            retry_policy=settings.git.retry_policy(),
            fetch_warning_seconds=settings.git.fetch_warning_seconds,
            git_binary=settings.git.binary,
        )
        try:
            synchronizer.sync(spec)
        except GitError as error:
            raise ConfigError(
                f"Could not fetch the fallback task file repository: {error}",
            ) from error
        fallback_config = settings.fallback_repo_dir / command.fallback_path
        if not fallback_config.is_file():
            raise ConfigError(
                f"Fallback repository has no task file at {command.fallback_path}",
                remediation="Pass --fallback-path with the task file location in that repo.",
            )
        return fallback_config

    def _link_graph(self, settings: Settings, command: LinkCommand) -> TaskGraph:
        if command.from_dir is None and command.to_dir is None:
            return build_task_graph(
                load_config(resolve_config_path(settings.config_path)),
                kinds=(TaskKind.LINK,),
            )
        if command.from_dir is None or command.to_dir is None:
            raise ConfigError("--from and --to must be given together")
        backup_root = (command.backup_dir or default_backup_root()).expanduser().absolute()
        spec = LinkSpec(
            from_directory=command.from_dir.expanduser().absolute(),
            to_directory=command.to_dir.expanduser().absolute(),
            backup_root=backup_root,
        )
        return TaskGraph(main=(Task(name="link", payload=spec),), backup_root=backup_root)


def _settings(options: GlobalOptions) -> Settings:
    try:
        settings = Settings.from_env(config_path=options.config_path, temp_dir=options.temp_dir)
        if options.log_level is not None:
            settings.log.level = options.log_level.upper()
        settings.validate()
    except ValueError as error:
        raise ConfigError(str(error)) from error
    return settings


def _context(
    settings: Settings,
    *,
    started_at: datetime,
    backup_root: Path | None = None,
) -> RunContext:
    return RunContext(
        keep_going=settings.run.keep_going,
        concurrency_limit=settings.run.concurrency,
        started_at=started_at,
        retry_policy=settings.git.retry_policy(),
        fetch_warning_seconds=settings.git.fetch_warning_seconds,
        slow_task_warning_seconds=settings.run.slow_task_warning_seconds,
        git_binary=settings.git.binary,
        backup_root=backup_root or default_backup_root(),
    )


def _start_logging(settings: Settings, run_stamp: str) -> Path:
    try:
        return setup_logging(
            log_dir=settings.log_dir,
            run_stamp=run_stamp,
            console_level=settings.console_level(),
            file_level=settings.file_level(),
        )
    except OSError as error:
        raise ConfigError(
            f"Cannot write logs to {settings.log_dir}: {error.strerror or error}",
            remediation="Pass a writable --temp-dir or set UPKEEP_TEMP_DIR.",
        ) from error


def _config_error(error: ConfigError) -> CommandResult:
    return CommandResult(lines=[f"Configuration error: {error}"], exit_code=EXIT_CONFIG_ERROR)


def _describe_task(task: Task) -> str:
    phase = "bootstrap" if task.bootstrap else "main"
    line = f"{phase:<9}  {task.kind.value:<7}  {task.name}"
    if task.needs_sudo:
        line += "  (sudo)"
    if task.description:
        line += f"  - {task.description}"
    return line
