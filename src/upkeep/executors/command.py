"""Command Executor: optional check command, then the run command, as external processes."""

from __future__ import annotations

import logging
import shlex
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from upkeep.errors import CommandError
from upkeep.tasks.models import CommandPayload, Task, TaskStatus

logger = logging.getLogger(__name__)

# A run command exiting with this code reports "nothing to do".
SKIP_EXIT_CODE = 204


@dataclass(slots=True)
class CommandOutput:
    """Captured result of one finished process."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float


class CommandExecutor:
    """Runs `CommandPayload` tasks with exactly the task's resolved environment."""

    def __init__(self, *, runner: Callable[..., Any] = subprocess.run) -> None:
        self._runner = runner

    def execute(self, task: Task) -> TaskStatus:
        payload = task.payload
        if not isinstance(payload, CommandPayload):
            raise TypeError(f"CommandExecutor cannot run {task.kind.value} task {task.name!r}")

        if payload.check_command is not None:
            check = self._spawn(task, payload.check_command, payload.working_directory)
            _log_output(task.name, "check_command", check, success=True)
            if check.exit_code == 0:
                logger.info("Task %r: check_command succeeded, skipping run_command", task.name)
                return TaskStatus.SKIPPED
            if check.exit_code < 0:
                raise _terminated(check, "check_command")
            logger.debug(
                "Task %r: check_command exited with %d, running run_command",
                task.name,
                check.exit_code,
            )

        run = self._spawn(task, payload.run_command, payload.working_directory)
        success = run.exit_code in {0, SKIP_EXIT_CODE}
        _log_output(task.name, "run_command", run, success=success)
        if run.exit_code == 0:
            return TaskStatus.SUCCESS
        if run.exit_code == SKIP_EXIT_CODE:
            logger.info("Task %r: run_command reported nothing to do", task.name)
            return TaskStatus.SKIPPED
        if run.exit_code < 0:
            raise _terminated(run, "run_command")
        raise CommandError(
            f"run_command exited with code {run.exit_code}: {shlex.join(run.argv)}",
            argv=run.argv,
            exit_code=run.exit_code,
            stdout=run.stdout,
            stderr=run.stderr,
        )

    def _spawn(
        self,
        task: Task,
        argv: tuple[str, ...],
        working_directory: Path | None,
    ) -> CommandOutput:
        if working_directory is not None and not working_directory.is_dir():
            raise CommandError(
                f"working directory does not exist: {working_directory}",
                argv=argv,
                remediation="Create the directory or fix working_directory in the task file.",
            )

        logger.debug("Task %r: running %s", task.name, shlex.join(argv))
        started = time.monotonic()
        try:
            completed = self._runner(
                list(argv),
                capture_output=True,
                text=True,
                cwd=working_directory,
                env=dict(task.env),
                check=False,
            )
        except FileNotFoundError as error:
            raise CommandError(
                f"command not found: {argv[0]}",
                argv=argv,
                remediation=f"Check that {argv[0]} is installed and on PATH for this task.",
            ) from error
        except PermissionError as error:
            raise CommandError(
                f"permission denied running {argv[0]}",
                argv=argv,
                remediation=f"Did you forget to make it executable: `chmod +x {argv[0]}`?",
            ) from error
        except OSError as error:
            raise CommandError(f"failed to start {argv[0]}: {error}", argv=argv) from error

        return CommandOutput(
            argv=argv,
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_seconds=time.monotonic() - started,
        )


def _terminated(output: CommandOutput, label: str) -> CommandError:
    number = -output.exit_code
    try:
        signal_name = signal.Signals(number).name
    except ValueError:
        signal_name = str(number)
    return CommandError(
        f"{label} terminated by signal {signal_name}: {shlex.join(output.argv)}",
        argv=output.argv,
        exit_code=output.exit_code,
        stdout=output.stdout,
        stderr=output.stderr,
    )


def _log_output(task_name: str, label: str, output: CommandOutput, *, success: bool) -> None:
    level = logging.DEBUG if success else logging.ERROR
    logger.log(
        level,
        "Task %r %s ran in %.2fs with exit code %d",
        task_name,
        label,
        output.duration_seconds,
        output.exit_code,
    )
    if output.stdout.strip():
        logger.log(level, "Task %r %s stdout:\n%s", task_name, label, output.stdout.rstrip())
    if output.stderr.strip():
        logger.log(level, "Task %r %s stderr:\n%s", task_name, label, output.stderr.rstrip())
