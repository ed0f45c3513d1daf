"""Locate and read the YAML task file into a raw, not yet validated configuration."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from upkeep.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "UPKEEP_CONFIG"
CONFIG_FILE_NAME = "upkeep.yaml"
TOP_LEVEL_KEYS = frozenset({"inherit_env", "env", "backup_dir", "tasks_dir", "tasks"})
_TASK_FILE_SUFFIXES = (".yaml", ".yml")


@dataclass(frozen=True, slots=True)
class RawConfig:
    """Deserialized task file; task entries are still plain mappings."""

    path: Path
    inherit_env: tuple[str, ...] | None = None
    env: dict[str, str] = field(default_factory=dict)
    backup_dir: str | None = None
    tasks: tuple[Mapping[str, Any], ...] = ()

    @property
    def base_dir(self) -> Path:
        """Directory relative paths in the task file are resolved against."""

        return self.path.parent


def resolve_config_path(
    explicit: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> Path:
    """Pick the task file: `--config`, `$UPKEEP_CONFIG`, XDG config dir, `~/.config`."""

    environ = os.environ if environ is None else environ
    home = Path.home() if home is None else home
    if explicit is not None:
        return explicit.expanduser()
    from_env = environ.get(CONFIG_ENV_VAR, "").strip()
    if from_env:
        return Path(from_env).expanduser()
    xdg_home = environ.get("XDG_CONFIG_HOME", "").strip()
    if xdg_home:
        candidate = Path(xdg_home).expanduser() / "upkeep" / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate
    return home / ".config" / "upkeep" / CONFIG_FILE_NAME


def load_config(path: Path) -> RawConfig:
    """Read the task file at `path` plus any per-task files from its `tasks_dir`."""

    path = path.expanduser().absolute()
    if not path.is_file():
        raise ConfigError(
            f"Task file not found: {path}",
            remediation=f"Pass --config, set {CONFIG_ENV_VAR}, or use --fallback-url.",
        )
    document = _read_yaml(path)
    if document is None:
        document = {}
    if not isinstance(document, Mapping):
        raise ConfigError(f"Task file must contain a mapping at the top level: {path}")

    unknown = sorted(set(document) - TOP_LEVEL_KEYS)
    if unknown:
        raise ConfigError(f"Unknown top-level keys in {path}: {', '.join(map(str, unknown))}")

    tasks = list(_task_list(document.get("tasks"), path))
    tasks_dir = document.get("tasks_dir")
    if tasks_dir is not None:
        tasks.extend(_load_tasks_dir(path.parent / Path(str(tasks_dir)).expanduser()))

    config = RawConfig(
        path=path,
        inherit_env=_inherit_env(document.get("inherit_env"), path),
        env=_string_mapping(document.get("env"), f"'env' in {path}"),
        backup_dir=None if document.get("backup_dir") is None else str(document["backup_dir"]),
        tasks=tuple(tasks),
    )
    logger.debug("Loaded %d task entries from %s", len(config.tasks), path)
    return config


def _read_yaml(path: Path) -> Any:
    try:
        with path.open(encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    except yaml.YAMLError as error:
        raise ConfigError(f"Invalid YAML in {path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"Cannot read task file {path}: {error}") from error


def _task_list(value: Any, path: Path) -> list[Mapping[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"'tasks' must be a list in {path}")
    for index, entry in enumerate(value):
        if not isinstance(entry, Mapping):
            raise ConfigError(f"Task entry #{index + 1} in {path} must be a mapping")
    return value


def _load_tasks_dir(directory: Path) -> list[Mapping[str, Any]]:
    if not directory.is_dir():
        raise ConfigError(f"tasks_dir is not a directory: {directory}")
    entries: list[Mapping[str, Any]] = []
    for task_file in sorted(directory.iterdir()):
        if task_file.suffix not in _TASK_FILE_SUFFIXES or not task_file.is_file():
            continue
        document = _read_yaml(task_file)
        if not isinstance(document, Mapping):
            raise ConfigError(f"Task file must contain a single task mapping: {task_file}")
        entry = dict(document)
        entry.setdefault("name", task_file.stem)
        entries.append(entry)
    return entries


def _inherit_env(value: Any, path: Path) -> tuple[str, ...] | None:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"'inherit_env' must be a list of variable names in {path}")
    return tuple(value)


def _string_mapping(value: Any, where: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where} must be a mapping of names to values")
    return {str(key): "" if item is None else str(item) for key, item in value.items()}
