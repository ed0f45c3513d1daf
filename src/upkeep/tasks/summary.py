"""Status Aggregator: per-status counts, failures and the process exit code."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from upkeep.errors import EXIT_OK, EXIT_TASKS_FAILED
from upkeep.tasks.models import TaskResult, TaskStatus


@dataclass(slots=True)
class RunSummary:
    """Aggregated outcome of one run; tasks that never started are counted apart."""

    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    not_run: int = 0
    failures: list[TaskResult] = field(default_factory=list)
    not_run_names: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.skipped + self.failed + self.not_run

    @property
    def exit_code(self) -> int:
        return EXIT_TASKS_FAILED if self.failed else EXIT_OK


def aggregate(results: Iterable[TaskResult]) -> RunSummary:
    summary = RunSummary()
    for result in results:
        if result.aborted:
            summary.not_run += 1
            summary.not_run_names.append(result.task_name)
        elif result.status == TaskStatus.SUCCESS:
            summary.succeeded += 1
        elif result.status == TaskStatus.SKIPPED:
            summary.skipped += 1
        else:
            summary.failed += 1
            summary.failures.append(result)
    return summary


def render_result_line(result: TaskResult) -> str:
    if result.aborted:
        return f"[not run] {result.task_name}"
    line = f"[{result.status.value}] {result.task_name} ({result.duration_seconds:.1f}s)"
    if result.detail:
        line += f": {result.detail}"
    return line


def render_summary_lines(summary: RunSummary) -> list[str]:
    lines = [
        "Run summary: "
        f"succeeded={summary.succeeded} skipped={summary.skipped} "
        f"failed={summary.failed} not_run={summary.not_run} total={summary.total}",
    ]
    for failure in summary.failures:
        lines.append(f"Failed: {failure.task_name}")
        lines.extend(f"  {line}" for line in str(failure.error).splitlines())
    if summary.not_run_names:
        lines.append(
            "Not run (bootstrap failure): " + ", ".join(summary.not_run_names),
        )
    return lines
