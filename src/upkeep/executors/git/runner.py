"""Thin subprocess wrapper around the `git` command line."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GitOutput:
    """Captured result of one git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        return self.stdout.strip()


class GitCommandError(RuntimeError):
    """A git invocation that exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        *,
        args: tuple[str, ...],
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.git_args = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class GitRunner:
    """Runs git with the process environment overlaid by the task environment.

    Prompts are disabled so a missing credential fails fast instead of hanging a worker,
    and the locale is pinned so failure messages can be classified.
    """

    def __init__(self, env: Mapping[str, str] | None = None, *, git_binary: str = "git") -> None:
        self.git_binary = git_binary
        self._env = {
            **os.environ,
            **(env or {}),
            "GIT_TERMINAL_PROMPT": "0",
            "LC_ALL": "C",
        }

    def run(self, *args: str, cwd: Path | None = None, check: bool = True) -> GitOutput:
        command = (self.git_binary, *args)
        logger.debug("Running: %s (cwd=%s)", shlex.join(command), cwd)
        try:
            completed = subprocess.run(
                list(command),
                cwd=cwd,
                env=self._env,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as error:
            raise GitCommandError(
                f"git executable not found: {self.git_binary}",
                args=tuple(args),
                returncode=None,
            ) from error
        except OSError as error:
            raise GitCommandError(
                f"failed to start git: {error}",
                args=tuple(args),
                returncode=None,
            ) from error

        output = GitOutput(
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and not output.ok:
            detail = output.stderr.strip() or output.stdout.strip() or "no output"
            raise GitCommandError(
                f"git {shlex.join(args)} exited with code {output.returncode}: {detail}",
                args=output.args,
                returncode=output.returncode,
                stdout=output.stdout,
                stderr=output.stderr,
            )
        return output

    def text(self, *args: str, cwd: Path | None = None) -> str:
        return self.run(*args, cwd=cwd).text
