"""Runtime settings for the orchestrator, read from `UPKEEP_*` environment variables."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from upkeep.executors.git.retry import RetryPolicy
from upkeep.tasks.models import default_concurrency

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class RunSettings:
    """Scheduling settings."""

    concurrency: int = field(default_factory=default_concurrency)
    keep_going: bool = False
    slow_task_warning_seconds: float = 60.0


@dataclass(slots=True)
class GitSettings:
    """Retry and timing settings for git network operations."""

    binary: str = "git"
    max_attempts: int = 3
    retry_base_seconds: float = 2.0
    retry_backoff_multiplier: float = 2.0
    retry_max_seconds: float = 30.0
    fetch_warning_seconds: float = 60.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.retry_base_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay_seconds=self.retry_max_seconds,
        )


@dataclass(slots=True)
class LoggingSettings:
    """Console and per-run log file levels."""

    level: str = "INFO"
    file_level: str = "DEBUG"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    config_path: Path | None = None
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "upkeep")
    run: RunSettings = field(default_factory=RunSettings)
    git: GitSettings = field(default_factory=GitSettings)
    log: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(
        cls,
        config_path: Path | None = None,
        temp_dir: Path | None = None,
    ) -> Settings:
        """Load settings from environment; explicit arguments (CLI options) win."""

        env_config = os.getenv("UPKEEP_CONFIG", "").strip()
        env_temp_dir = os.getenv("UPKEEP_TEMP_DIR", "").strip()
        return cls(
            config_path=config_path or (Path(env_config) if env_config else None),
            temp_dir=(
                temp_dir
                or (Path(env_temp_dir) if env_temp_dir else None)
                or Path(tempfile.gettempdir()) / "upkeep"
            ),
            run=RunSettings(
                concurrency=int(os.getenv("UPKEEP_CONCURRENCY", str(default_concurrency()))),
                keep_going=_env_bool("UPKEEP_KEEP_GOING", default=False),
                slow_task_warning_seconds=float(
                    os.getenv("UPKEEP_SLOW_TASK_WARNING_SECONDS", "60"),
                ),
            ),
            git=GitSettings(
                binary=os.getenv("UPKEEP_GIT_BINARY", "git"),
                max_attempts=int(os.getenv("UPKEEP_GIT_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(os.getenv("UPKEEP_GIT_RETRY_BASE_SECONDS", "2.0")),
                retry_backoff_multiplier=float(
                    os.getenv("UPKEEP_GIT_RETRY_BACKOFF_MULTIPLIER", "2.0"),
                ),
                retry_max_seconds=float(os.getenv("UPKEEP_GIT_RETRY_MAX_SECONDS", "30")),
                fetch_warning_seconds=float(
                    os.getenv("UPKEEP_GIT_FETCH_WARNING_SECONDS", "60"),
                ),
            ),
            log=LoggingSettings(
                level=os.getenv("UPKEEP_LOG_LEVEL", "INFO").strip().upper(),
                file_level=os.getenv("UPKEEP_FILE_LOG_LEVEL", "DEBUG").strip().upper(),
            ),
        )

    @property
    def log_dir(self) -> Path:
        return self.temp_dir / "logs"

    @property
    def fallback_repo_dir(self) -> Path:
        return self.temp_dir / "fallback_repo"

    def validate(self) -> None:
        """Raise `ValueError` for settings that cannot produce a working run."""

        if self.run.concurrency <= 0:
            raise ValueError("UPKEEP_CONCURRENCY must be > 0.")
        if self.run.slow_task_warning_seconds < 0:
            raise ValueError("UPKEEP_SLOW_TASK_WARNING_SECONDS must be >= 0.")
        if self.git.max_attempts <= 0:
            raise ValueError("UPKEEP_GIT_MAX_ATTEMPTS must be > 0.")
        if self.git.retry_base_seconds < 0 or self.git.retry_max_seconds < 0:
            raise ValueError("UPKEEP_GIT_RETRY_*_SECONDS must be >= 0.")
        if self.git.retry_backoff_multiplier < 1:
            raise ValueError("UPKEEP_GIT_RETRY_BACKOFF_MULTIPLIER must be >= 1.")
        if self.git.fetch_warning_seconds <= 0:
            raise ValueError("UPKEEP_GIT_FETCH_WARNING_SECONDS must be > 0.")
        for name, level in (
            ("UPKEEP_LOG_LEVEL", self.log.level),
            ("UPKEEP_FILE_LOG_LEVEL", self.log.file_level),
        ):
            if level not in _LOG_LEVELS:
                raise ValueError(f"{name} must be one of {', '.join(_LOG_LEVELS)}: {level!r}")

    def console_level(self) -> int:
        return logging.getLevelNamesMapping()[self.log.level]

    def file_level(self) -> int:
        return logging.getLevelNamesMapping()[self.log.file_level]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
