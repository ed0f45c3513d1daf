"""Environment resolution: inherited variables, defined variables and `$VAR` expansion."""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Mapping
from pathlib import Path

from upkeep.errors import ConfigError

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"\$(?:\$|\{(\w+)\}|(\w+))")


def inherited_env(
    inherit_env: Collection[str] | None,
    environ: Mapping[str, str],
) -> dict[str, str]:
    """Pick the inherited part of the process environment.

    `None` means the whole process environment is inherited. Listed names missing
    from the process environment are silently left out.
    """

    if inherit_env is None:
        return dict(environ)
    return {name: environ[name] for name in inherit_env if name in environ}


def references(value: str) -> set[str]:
    """Names of the variables `value` refers to (`$$` escapes are not references)."""

    return {
        match.group(1) or match.group(2)
        for match in _REFERENCE.finditer(value)
        if match.group(0) != "$$"
    }


def expand(
    value: str,
    env: Mapping[str, str],
    *,
    home: Path,
    task_name: str | None = None,
) -> str:
    """Expand a leading `~` and every `$VAR` / `${VAR}` reference in `value`."""

    if value == "~" or value.startswith("~/"):
        value = str(home) + value[1:]

    def _substitute(match: re.Match[str]) -> str:
        if match.group(0) == "$$":
            return "$"
        name = match.group(1) or match.group(2)
        if name not in env:
            raise ConfigError(
                f"unresolved environment variable reference ${name} in {value!r}",
                task_name=task_name,
                variable=name,
                remediation=f"Define {name} under 'env' or list it in 'inherit_env'.",
            )
        return env[name]

    return _REFERENCE.sub(_substitute, value)


def resolve_env(
    defined: Mapping[str, str],
    base: Mapping[str, str],
    *,
    home: Path,
    task_name: str | None = None,
) -> dict[str, str]:
    """Layer `defined` over `base`, resolving references between defined variables.

    Defined variables may refer to each other in any order; they are resolved in
    rounds until none is left. A variable referring to itself sees the value from
    `base` (so `PATH: "~/bin:$PATH"` extends the inherited path). A round that
    makes no progress means a reference cycle.
    """

    resolved: dict[str, str] = {}
    pending = {key: str(value) for key, value in defined.items()}
    while pending:
        ready = [
            key
            for key, raw in pending.items()
            if not any(ref in pending and ref != key for ref in references(raw))
        ]
        if not ready:
            names = ", ".join(sorted(pending))
            raise ConfigError(
                f"environment variables reference each other in a cycle: {names}",
                task_name=task_name,
                variable=min(pending),
            )
        for key in ready:
            lookup = {**base, **resolved}
            resolved[key] = expand(pending.pop(key), lookup, home=home, task_name=task_name)

    env = {**base, **resolved}
    logger.debug("Resolved %d environment variables (%d defined)", len(env), len(resolved))
    return env
