"""Scheduler: sequential bootstrap phase, then a bounded worker pool for the main phase."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed

from upkeep.errors import UpkeepError
from upkeep.executors.command import CommandExecutor
from upkeep.executors.git.sync import GitSynchronizer
from upkeep.executors.link import SymlinkLinker
from upkeep.tasks.models import (
    CommandPayload,
    GitRepoSpec,
    LinkSpec,
    RunContext,
    Task,
    TaskResult,
    TaskStatus,
)

logger = logging.getLogger(__name__)

ResultCallback = Callable[[TaskResult], None]


class Scheduler:
    """Runs a task graph against one `RunContext`.

    Bootstrap tasks run one by one on the calling thread, in declaration order. A
    failed bootstrap task stops the run unless `keep_going` is set; tasks that never
    started are reported as not run. Main tasks then run concurrently; a failing main
    task never affects its siblings and every main task reports a result.
    """

    def __init__(
        self,
        context: RunContext,
        *,
        command_executor: CommandExecutor | None = None,
        linker: SymlinkLinker | None = None,
        synchronizer: GitSynchronizer | None = None,
    ) -> None:
        self.context = context
        self.command_executor = command_executor or CommandExecutor()
        self.linker = linker or SymlinkLinker(context.backup)
        self.synchronizer = synchronizer or GitSynchronizer(
            retry_policy=context.retry_policy,
            fetch_warning_seconds=context.fetch_warning_seconds,
            git_binary=context.git_binary,
        )

    def run(
        self,
        bootstrap_tasks: Sequence[Task],
        main_tasks: Sequence[Task],
        *,
        on_result: ResultCallback | None = None,
    ) -> list[TaskResult]:
        """Execute both phases and return one result per task, bootstrap first."""

        def _emit(result: TaskResult) -> TaskResult:
            if on_result is not None:
                on_result(result)
            return result

        results: list[TaskResult] = []
        for index, task in enumerate(bootstrap_tasks):
            result = _emit(self.execute_task(task))
            results.append(result)
            if result.status == TaskStatus.FAILED and not self.context.keep_going:
                remaining = [*bootstrap_tasks[index + 1 :], *main_tasks]
                logger.error(
                    "Bootstrap task %r failed, not running the remaining %d task(s)",
                    task.name,
                    len(remaining),
                )
                results.extend(_emit(TaskResult.not_run(other.name)) for other in remaining)
                return results
            if result.status == TaskStatus.FAILED:
                logger.warning("Bootstrap task %r failed, continuing (keep going)", task.name)

        results.extend(self._run_main(main_tasks, _emit))
        return results

    def _run_main(
        self,
        tasks: Sequence[Task],
        emit: Callable[[TaskResult], TaskResult],
    ) -> list[TaskResult]:
        if not tasks:
            return []
        workers = min(self.context.concurrency_limit, len(tasks))
        logger.debug("Running %d main task(s) on %d worker(s)", len(tasks), workers)
        results: list[TaskResult | None] = [None] * len(tasks)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upkeep-task") as pool:
            futures = {
                pool.submit(self.execute_task, task): index for index, task in enumerate(tasks)
            }
            for future in as_completed(futures):
                results[futures[future]] = emit(future.result())
        return [result for result in results if result is not None]

    def execute_task(self, task: Task) -> TaskResult:
        """Run one task to completion; every error becomes a Failed result."""

        logger.info("Running task %r (%s)", task.name, task.kind.value)
        started = time.monotonic()
        try:
            status, detail = self._dispatch(task)
        except UpkeepError as error:
            logger.error("Task %r failed: %s", task.name, error)
            result = TaskResult(task_name=task.name, status=TaskStatus.FAILED, error=error)
        except Exception as error:
            logger.exception("Task %r raised an unexpected error", task.name)
            result = TaskResult(task_name=task.name, status=TaskStatus.FAILED, error=error)
        else:
            result = TaskResult(task_name=task.name, status=status, detail=detail)
        result.duration_seconds = time.monotonic() - started

        if result.duration_seconds > self.context.slow_task_warning_seconds:
            logger.warning("Task %r took %.1fs", task.name, result.duration_seconds)
        logger.debug(
            "Task %r finished: %s in %.2fs",
            task.name,
            result.status.value,
            result.duration_seconds,
        )
        return result

    def _dispatch(self, task: Task) -> tuple[TaskStatus, str | None]:
        payload = task.payload
        if isinstance(payload, CommandPayload):
            return self.command_executor.execute(task), None
        if isinstance(payload, LinkSpec):
            with self.context.link_locks.hold(payload.to_directory):
                report = self.linker.link(payload)
            return report.status, report.describe()
        if isinstance(payload, GitRepoSpec):
            with self.context.git_locks.hold(payload.local_path):
                outcome = self.synchronizer.sync(payload, task.env)
            return outcome.status, outcome.detail or None
        raise TypeError(f"Unsupported task payload: {type(payload).__name__}")
