"""Error taxonomy shared by the task graph, executors and CLI."""

from __future__ import annotations

from pathlib import Path

EXIT_OK = 0
EXIT_TASKS_FAILED = 1
EXIT_CONFIG_ERROR = 3


class UpkeepError(Exception):
    """Base error with an optional remediation hint for the operator."""

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def __str__(self) -> str:
        if self.remediation:
            return f"{self.message}\n  Suggestion: {self.remediation}"
        return self.message


class ConfigError(UpkeepError):
    """Invalid task configuration, detected before any task runs."""

    def __init__(
        self,
        message: str,
        *,
        task_name: str | None = None,
        variable: str | None = None,
        remediation: str | None = None,
    ) -> None:
        if task_name is not None:
            message = f"Task {task_name!r}: {message}"
        super().__init__(message, remediation=remediation)
        self.task_name = task_name
        self.variable = variable


class GitError(UpkeepError):
    """Repository synchronization failure for one git task."""

    def __init__(
        self,
        message: str,
        *,
        path: Path,
        state: str | None = None,
        remediation: str | None = None,
    ) -> None:
        super().__init__(f"{message} (repo: {path})", remediation=remediation)
        self.path = path
        self.state = state


class LinkError(UpkeepError):
    """Filesystem failure while materializing a symlink tree."""

    def __init__(self, message: str, *, path: Path, remediation: str | None = None) -> None:
        super().__init__(f"{message}: {path}", remediation=remediation)
        self.path = path


class CommandError(UpkeepError):
    """Check/run command failure: spawn error, signal or non-zero exit."""

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        argv: tuple[str, ...],
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.argv = argv
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        rendered = super().__str__()
        if self.stdout.strip():
            rendered += f"\n  stdout:\n{_indent(self.stdout)}"
        if self.stderr.strip():
            rendered += f"\n  stderr:\n{_indent(self.stderr)}"
        return rendered


def _indent(text: str) -> str:
    return "\n".join(f"    {line}" for line in text.rstrip().splitlines())
