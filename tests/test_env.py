from __future__ import annotations

from pathlib import Path

import allure
import pytest

from upkeep.errors import ConfigError
from upkeep.tasks.env import expand, inherited_env, references, resolve_env

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Environment Resolution"),
]

HOME = Path("/home/alice")


def test_inherited_env_none_means_whole_environment() -> None:
    environ = {"PATH": "/usr/bin", "TERM": "xterm"}
    assert inherited_env(None, environ) == environ


def test_inherited_env_picks_listed_names_that_exist() -> None:
    environ = {"PATH": "/usr/bin", "TERM": "xterm"}
    assert inherited_env(("PATH", "MISSING"), environ) == {"PATH": "/usr/bin"}


def test_references_ignores_dollar_escape() -> None:
    assert references("$A-${B}-$$C") == {"A", "B"}


def test_expand_substitutes_both_reference_forms_and_home() -> None:
    value = expand("~/src/${REPO}/$BRANCH", {"REPO": "dotfiles", "BRANCH": "main"}, home=HOME)
    assert value == "/home/alice/src/dotfiles/main"


def test_expand_keeps_tilde_inside_value() -> None:
    assert expand("a~b", {}, home=HOME) == "a~b"


def test_expand_unescapes_double_dollar() -> None:
    assert expand("cost $$5", {}, home=HOME) == "cost $5"


def test_expand_unresolved_reference_names_task_and_variable() -> None:
    with pytest.raises(ConfigError) as excinfo:
        expand("$NOPE/bin", {}, home=HOME, task_name="tools")
    error = excinfo.value
    assert error.task_name == "tools"
    assert error.variable == "NOPE"
    assert "Task 'tools'" in str(error)
    assert "NOPE" in str(error)


def test_resolve_env_handles_forward_references() -> None:
    env = resolve_env(
        {"BIN": "$ROOT/bin", "ROOT": "~/tools"},
        {},
        home=HOME,
    )
    assert env == {"ROOT": "/home/alice/tools", "BIN": "/home/alice/tools/bin"}


def test_resolve_env_self_reference_extends_inherited_value() -> None:
    env = resolve_env({"PATH": "~/bin:$PATH"}, {"PATH": "/usr/bin"}, home=HOME)
    assert env["PATH"] == "/home/alice/bin:/usr/bin"


def test_resolve_env_layers_over_base() -> None:
    env = resolve_env({"EDITOR": "vim"}, {"EDITOR": "nano", "TERM": "xterm"}, home=HOME)
    assert env == {"EDITOR": "vim", "TERM": "xterm"}


def test_resolve_env_detects_cycles() -> None:
    with pytest.raises(ConfigError, match="cycle: A, B") as excinfo:
        resolve_env({"A": "$B", "B": "$A"}, {}, home=HOME)
    assert excinfo.value.variable == "A"


def test_resolve_env_reports_missing_reference() -> None:
    with pytest.raises(ConfigError) as excinfo:
        resolve_env({"A": "$MISSING"}, {}, home=HOME, task_name="t")
    assert excinfo.value.variable == "MISSING"
