"""Delete local branches whose work has already landed upstream."""

from __future__ import annotations

import logging
from pathlib import Path

from upkeep.executors.git import status
from upkeep.executors.git.runner import GitRunner

logger = logging.getLogger(__name__)


def prunable_branches(runner: GitRunner, path: Path) -> list[str]:
    """Local branches that are safe to delete.

    A branch qualifies when it has an upstream configured, no remote still has a
    branch of the same name (its pushed copy was deleted after merging), and
    `git cherry` finds no commit on it missing from the merge base: the upstream
    itself, or the remote's default branch when the upstream is gone. The
    checked-out branch never qualifies.
    """

    remotes = runner.text("remote", cwd=path).split()
    checked_out = status.current_branch(runner, path)
    candidates: list[str] = []
    for branch, upstream, _push in status.local_branches(runner, path):
        if branch == checked_out or not upstream:
            continue
        if any(
            status.resolve_commit(runner, path, f"refs/remotes/{remote}/{branch}")
            for remote in remotes
        ):
            continue
        base = _merge_target(runner, path, upstream, remotes)
        if base is None:
            logger.debug("Keeping %s: cannot tell where %s was merged", branch, upstream)
            continue
        cherry = runner.text("cherry", base, branch, cwd=path)
        if any(line.startswith("+") for line in cherry.splitlines()):
            logger.debug("Keeping %s: it has commits not in %s", branch, base)
            continue
        candidates.append(branch)
    return candidates


def _merge_target(
    runner: GitRunner,
    path: Path,
    upstream: str,
    remotes: list[str],
) -> str | None:
    if status.resolve_commit(runner, path, upstream) is not None:
        return upstream
    for remote in remotes:
        if upstream.startswith(f"{remote}/"):
            default = status.remote_default_branch(runner, path, remote)
            if default is not None:
                return f"refs/remotes/{remote}/{default}"
    return None


def prune_merged_branches(runner: GitRunner, path: Path) -> list[str]:
    pruned = prunable_branches(runner, path)
    for branch in pruned:
        runner.run("branch", "-D", branch, cwd=path)
        logger.info("Pruned merged branch %s in %s", branch, path)
    if not pruned:
        logger.debug("Nothing to prune in %s", path)
    return pruned
