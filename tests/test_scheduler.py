from __future__ import annotations

import os
import shutil
import threading
import time
from pathlib import Path

import allure
import pytest

from upkeep.errors import EXIT_TASKS_FAILED, CommandError
from upkeep.executors.git.sync import SyncOutcome
from upkeep.tasks.graph import build_task_graph
from upkeep.tasks.loader import RawConfig
from upkeep.tasks.models import (
    CommandPayload,
    GitRepoSpec,
    LinkSpec,
    RunContext,
    Task,
    TaskResult,
    TaskStatus,
)
from upkeep.tasks.scheduler import Scheduler
from upkeep.tasks.summary import aggregate

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Bootstrap Gating and Parallel Main Phase"),
]


class FakeCommandExecutor:
    """Maps task names to statuses or errors and records the call order."""

    def __init__(self, outcomes: dict[str, TaskStatus | Exception] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def execute(self, task: Task) -> TaskStatus:
        with self._lock:
            self.calls.append(task.name)
        outcome = self.outcomes.get(task.name, TaskStatus.SUCCESS)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _command(name: str, *, bootstrap: bool = False) -> Task:
    return Task(name=name, payload=CommandPayload(run_command=("true",)), bootstrap=bootstrap)


def _failure(name: str) -> CommandError:
    return CommandError(f"{name} exploded", argv=("false",), exit_code=1)


def test_bootstrap_runs_in_declared_order_before_main(run_context: RunContext) -> None:
    executor = FakeCommandExecutor()
    scheduler = Scheduler(run_context, command_executor=executor)

    results = scheduler.run(
        [_command("b1", bootstrap=True), _command("b2", bootstrap=True)],
        [_command("m1"), _command("m2")],
    )

    assert executor.calls[:2] == ["b1", "b2"]
    assert sorted(executor.calls[2:]) == ["m1", "m2"]
    assert [result.task_name for result in results] == ["b1", "b2", "m1", "m2"]


def test_failed_bootstrap_stops_the_run(run_context: RunContext) -> None:
    executor = FakeCommandExecutor({"b1": _failure("b1")})
    emitted: list[TaskResult] = []

    results = Scheduler(run_context, command_executor=executor).run(
        [_command("b1", bootstrap=True), _command("b2", bootstrap=True)],
        [_command("m1"), _command("m2")],
        on_result=emitted.append,
    )

    assert executor.calls == ["b1"]
    assert results[0].status == TaskStatus.FAILED
    assert [(r.task_name, r.aborted) for r in results[1:]] == [
        ("b2", True),
        ("m1", True),
        ("m2", True),
    ]
    assert emitted == results
    summary = aggregate(results)
    assert summary.failed == 1
    assert summary.not_run == 3
    assert summary.not_run_names == ["b2", "m1", "m2"]


def test_keep_going_tolerates_bootstrap_failure() -> None:
    context = RunContext(keep_going=True, concurrency_limit=2)
    executor = FakeCommandExecutor({"b1": _failure("b1")})

    results = Scheduler(context, command_executor=executor).run(
        [_command("b1", bootstrap=True), _command("b2", bootstrap=True)],
        [_command("m1")],
    )

    assert executor.calls == ["b1", "b2", "m1"]
    assert [result.status for result in results] == [
        TaskStatus.FAILED,
        TaskStatus.SUCCESS,
        TaskStatus.SUCCESS,
    ]
    assert not any(result.aborted for result in results)


def test_failing_main_task_does_not_affect_siblings(run_context: RunContext) -> None:
    executor = FakeCommandExecutor({"two": _failure("two")})

    results = Scheduler(run_context, command_executor=executor).run(
        [],
        [_command("one"), _command("two"), _command("three")],
    )

    assert sorted(executor.calls) == ["one", "three", "two"]
    summary = aggregate(results)
    assert (summary.succeeded, summary.failed) == (2, 1)
    assert summary.failures[0].task_name == "two"
    assert isinstance(summary.failures[0].error, CommandError)
    assert summary.exit_code == EXIT_TASKS_FAILED


def test_real_commands_scenario(tmp_path: Path, run_context: RunContext) -> None:
    sh = shutil.which("sh") or "/bin/sh"
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}
    tasks = [
        Task(name="ok", payload=CommandPayload(run_command=(sh, "-c", "exit 0")), env=env),
        Task(name="bad", payload=CommandPayload(run_command=(sh, "-c", "exit 7")), env=env),
        Task(name="fine", payload=CommandPayload(run_command=(sh, "-c", "exit 0")), env=env),
    ]

    summary = aggregate(Scheduler(run_context).run([], tasks))

    assert summary.failed == 1
    assert summary.succeeded <= 2
    assert summary.total == 3
    assert summary.exit_code != 0


def test_unexpected_exception_becomes_failed_result(run_context: RunContext) -> None:
    executor = FakeCommandExecutor({"boom": RuntimeError("bug")})

    results = Scheduler(run_context, command_executor=executor).run([], [_command("boom")])

    assert results[0].status == TaskStatus.FAILED
    assert isinstance(results[0].error, RuntimeError)


def test_main_phase_respects_concurrency_limit() -> None:
    context = RunContext(concurrency_limit=2)
    active = 0
    peak = 0
    guard = threading.Lock()
    release = threading.Event()

    class _SlowExecutor:
        def execute(self, task: Task) -> TaskStatus:
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
                if active == 2:
                    release.set()
            release.wait(timeout=5)
            with guard:
                active -= 1
            return TaskStatus.SUCCESS

    results = Scheduler(context, command_executor=_SlowExecutor()).run(
        [],
        [_command(f"t{index}") for index in range(5)],
    )

    assert peak == 2
    assert [result.task_name for result in results] == [f"t{index}" for index in range(5)]


def test_results_are_emitted_as_tasks_finish(run_context: RunContext) -> None:
    emitted: list[str] = []
    Scheduler(run_context, command_executor=FakeCommandExecutor()).run(
        [_command("boot", bootstrap=True)],
        [_command("a"), _command("b")],
        on_result=lambda result: emitted.append(result.task_name),
    )
    assert emitted[0] == "boot"
    assert sorted(emitted[1:]) == ["a", "b"]


def test_link_task_reports_changes_and_skips_second_run(
    tmp_path: Path,
    run_context: RunContext,
) -> None:
    source = tmp_path / "dotfiles"
    source.mkdir()
    (source / ".zshrc").write_text("zsh", encoding="utf-8")
    task = Task(
        name="dotfiles",
        payload=LinkSpec(source, tmp_path / "home", tmp_path / "backups"),
    )
    scheduler = Scheduler(run_context)

    first = scheduler.execute_task(task)
    second = scheduler.execute_task(task)

    assert first.status == TaskStatus.SUCCESS
    assert first.detail is not None
    assert "linked=1" in first.detail
    assert second.status == TaskStatus.SKIPPED


def test_git_tasks_on_one_repository_never_overlap(
    tmp_path: Path,
    run_context: RunContext,
) -> None:
    active = 0
    peak = 0
    guard = threading.Lock()

    class _FakeSynchronizer:
        def sync(self, spec: GitRepoSpec, env: dict[str, str]) -> SyncOutcome:
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with guard:
                active -= 1
            if env.get("FAIL") == "1":
                raise RuntimeError("sync blew up")
            return SyncOutcome(status=TaskStatus.SUCCESS, detail="done")

    spec = GitRepoSpec(local_path=tmp_path / "repo", remote_url="x")
    tasks = [
        Task(name=f"repo{index}", payload=spec, env={"FAIL": "1" if index == 0 else "0"})
        for index in range(3)
    ]

    results = Scheduler(run_context, synchronizer=_FakeSynchronizer()).run([], tasks)

    by_name = {result.task_name: result for result in results}
    assert peak == 1
    assert by_name["repo0"].status == TaskStatus.FAILED
    assert by_name["repo1"].status == TaskStatus.SUCCESS
    assert by_name["repo2"].detail == "done"


def test_link_tasks_share_one_backup_directory_per_run(tmp_path: Path) -> None:
    home = tmp_path / "home"
    for name in ("one", "two"):
        (tmp_path / "dotfiles" / name).mkdir(parents=True)
        (tmp_path / "dotfiles" / name / f".{name}rc").write_text("new", encoding="utf-8")
        (home / name).mkdir(parents=True)
        (home / name / f".{name}rc").write_text(f"old {name}", encoding="utf-8")
    config = RawConfig(
        path=tmp_path / "upkeep.yaml",
        tasks=(
            {"name": "one", "link": {"from": "dotfiles/one", "to": "home/one"}},
            {"name": "two", "link": {"from": "dotfiles/two", "to": "home/two"}},
        ),
    )
    graph = build_task_graph(config, environ={}, home=tmp_path)
    context = RunContext(concurrency_limit=2, backup_root=graph.backup_root)

    results = Scheduler(context).run(graph.bootstrap, graph.main)

    assert [result.status for result in results] == [TaskStatus.SUCCESS, TaskStatus.SUCCESS]
    assert context.backup.path == (tmp_path / "backup" / context.run_stamp).resolve()
    assert [path.name for path in (tmp_path / "backup").iterdir()] == [context.run_stamp]
    assert not (home / "one" / "backup").exists()
    assert not (home / "two" / "backup").exists()
    saved = context.backup.path
    assert (saved / ".onerc").read_text(encoding="utf-8") == "old one"
    assert (saved / ".tworc").read_text(encoding="utf-8") == "old two"


@pytest.mark.parametrize("limit", [0, -1])
def test_run_context_rejects_non_positive_concurrency(limit: int) -> None:
    with pytest.raises(ValueError):
        RunContext(concurrency_limit=limit)
