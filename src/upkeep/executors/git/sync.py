"""Git Repository Synchronizer: bring one working copy in sync with its remote."""

from __future__ import annotations

import logging
import shutil
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

from upkeep.errors import GitError
from upkeep.executors.git import status
from upkeep.executors.git.failure_classifier import (
    GitFailureClass,
    classify_error,
    is_transient,
)
from upkeep.executors.git.prune import prune_merged_branches
from upkeep.executors.git.retry import RetryPolicy
from upkeep.executors.git.runner import GitCommandError, GitRunner
from upkeep.tasks.models import GitRepoSpec, TaskStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncState(str, Enum):
    """Steps of one repository synchronization."""

    UNINITIALIZED = "uninitialized"
    CLONING = "cloning"
    FETCHING = "fetching"
    CHECKING_DIVERGENCE = "checking_divergence"
    UP_TO_DATE = "up_to_date"
    UPDATING = "updating"
    SUBMODULES = "submodules"
    PRUNING = "pruning"
    CLEAN = "clean"
    ERROR = "error"


@dataclass(slots=True)
class SyncOutcome:
    """Where the synchronizer went and what it left behind."""

    status: TaskStatus
    states: list[SyncState] = field(default_factory=list)
    head: str | None = None
    detail: str = ""
    pruned: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class GitSynchronizer:
    """Clone, fetch, fast-forward, update submodules and prune, per `GitRepoSpec`.

    Network operations (clone, fetch, submodule update) go through the retry policy
    and fall back to the repository's fallback remote when the primary one keeps failing.
    A single attempt running longer than `fetch_warning_seconds` logs a warning but
    is never aborted.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        fetch_warning_seconds: float = 60.0,
        git_binary: str = "git",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self.fetch_warning_seconds = fetch_warning_seconds
        self.git_binary = git_binary
        self._sleep = sleep

    def sync(self, spec: GitRepoSpec, env: Mapping[str, str] | None = None) -> SyncOutcome:
        runner = GitRunner(env, git_binary=self.git_binary)
        return _RepositorySync(self, spec, runner).execute()

    def with_retry(self, operation: Callable[[], T], *, description: str) -> T:
        def _attempt() -> T:
            with slow_operation_warning(description, self.fetch_warning_seconds):
                return operation()

        return self.retry_policy.run(
            _attempt,
            is_retryable=is_transient,
            description=description,
            sleep=self._sleep,
        )


@contextmanager
def slow_operation_warning(description: str, threshold_seconds: float) -> Iterator[None]:
    """Log a warning if the wrapped block is still running after `threshold_seconds`."""

    timer = threading.Timer(
        threshold_seconds,
        logger.warning,
        args=("%s is taking longer than %.0fs, still waiting", description, threshold_seconds),
    )
    timer.daemon = True
    timer.start()
    try:
        yield
    finally:
        timer.cancel()


class _RepositorySync:
    """State machine for one `sync` call."""

    def __init__(self, owner: GitSynchronizer, spec: GitRepoSpec, runner: GitRunner) -> None:
        self.owner = owner
        self.spec = spec
        self.runner = runner
        self.path = spec.local_path.expanduser()
        self.remote = spec.remote_name
        self.outcome = SyncOutcome(status=TaskStatus.SKIPPED)

    @property
    def state(self) -> SyncState:
        return self.outcome.states[-1]

    def _enter(self, state: SyncState) -> None:
        self.outcome.states.append(state)
        logger.debug("%s: %s", self.path, state.value)

    def execute(self) -> SyncOutcome:
        self._enter(SyncState.UNINITIALIZED)
        try:
            if status.is_repository(self.runner, self.path):
                self._update_existing()
            else:
                self._clone()
        except GitError as error:
            if error.state is None:
                error.state = self.state.value
            self._enter(SyncState.ERROR)
            raise
        except GitCommandError as error:
            failed_in = self.state
            self._enter(SyncState.ERROR)
            raise GitError(
                f"git failed while {failed_in.value}: {error}",
                path=self.path,
                state=failed_in.value,
            ) from error
        self._enter(SyncState.CLEAN)
        self.outcome.head = status.resolve_commit(self.runner, self.path, "HEAD")
        return self.outcome

    # Clone

    def _clone(self) -> None:
        self._enter(SyncState.CLONING)
        existed = self.path.exists()
        if self.path.is_file() or (existed and any(self.path.iterdir())):
            raise GitError(
                "Path exists and is not a git repository",
                path=self.path,
                remediation="Move it out of the way so the repository can be cloned there.",
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)

        failures: list[tuple[str, GitCommandError]] = []
        for url in self._remote_urls():
            try:
                self.owner.with_retry(
                    lambda url=url: self._clone_from(url),
                    description=f"git clone {url}",
                )
            except GitCommandError as error:
                failures.append((url, error))
                if not existed and self.path.exists():
                    shutil.rmtree(self.path)
                logger.warning("Clone of %s from %s failed: %s", self.path, url, error)
                continue
            self.outcome.detail = f"cloned from {url}"
            break
        else:
            raise self._network_failure("clone", failures)

        self.outcome.status = TaskStatus.SUCCESS
        if self.spec.recurse_submodules and (self.path / ".gitmodules").exists():
            self._update_submodules()
        logger.info("Cloned %s into %s", self.spec.remote_url, self.path)

    def _clone_from(self, url: str) -> None:
        args = ["clone", "--origin", self.remote]
        if self.spec.branch:
            args += ["--branch", self.spec.branch]
        self.runner.run(*args, "--", url, str(self.path))

    # Existing repository

    def _update_existing(self) -> None:
        self._ensure_remote()
        self._fetch()
        if status.remote_default_branch(self.runner, self.path, self.remote) is None:
            result = self.runner.run(
                "remote",
                "set-head",
                self.remote,
                "--auto",
                cwd=self.path,
                check=False,
            )
            if not result.ok:
                logger.debug(
                    "Could not set %s/HEAD in %s: %s",
                    self.remote,
                    self.path,
                    result.stderr.strip(),
                )

        self._enter(SyncState.CHECKING_DIVERGENCE)
        branch = self._target_branch()
        checked_out = status.current_branch(self.runner, self.path)
        local_tip = status.resolve_commit(self.runner, self.path, f"refs/heads/{branch}")
        remote_ref = self._remote_ref(branch, has_local=local_tip is not None)
        remote_tip = status.resolve_commit(self.runner, self.path, remote_ref)
        if remote_tip is None:
            raise GitError(
                f"Remote branch {remote_ref} not found after fetch",
                path=self.path,
                remediation=f"Check that branch {branch!r} exists on remote {self.remote!r}.",
            )
        needs_checkout = checked_out != branch

        if not needs_checkout and local_tip == remote_tip:
            self._enter(SyncState.UP_TO_DATE)
            self.outcome.detail = f"{branch} up to date at {remote_tip[:12]}"
        elif (
            not needs_checkout
            and local_tip is not None
            and status.is_ancestor(self.runner, self.path, remote_tip, local_tip)
        ):
            self._enter(SyncState.UP_TO_DATE)
            self.outcome.detail = f"{branch} is ahead of {remote_ref}"
            logger.warning(
                "%s: %s is ahead of %s, nothing to update",
                self.path,
                branch,
                remote_ref,
            )
        else:
            self._require_clean(f"cannot update branch {branch!r}")
            if local_tip is not None and self._diverged(local_tip, remote_tip):
                raise GitError(
                    f"Branch {branch!r} has diverged from {remote_ref}, cannot fast-forward",
                    path=self.path,
                    remediation="Rebase or merge the branch manually, then re-run.",
                )
            self._enter(SyncState.UPDATING)
            self._update(branch, local_tip, remote_ref, remote_tip, checkout=needs_checkout)

        if self.spec.prune:
            self._prune()
        self.outcome.warnings = status.unpushed_warnings(self.runner, self.path)
        for warning in self.outcome.warnings:
            logger.warning("%s: unpushed work: %s", self.path, warning)

    def _ensure_remote(self) -> None:
        current = status.remote_url(self.runner, self.path, self.remote)
        if current is None:
            logger.info(
                "Adding remote %s -> %s in %s",
                self.remote,
                self.spec.remote_url,
                self.path,
            )
            self.runner.run("remote", "add", self.remote, self.spec.remote_url, cwd=self.path)
        elif current not in {self.spec.remote_url, self.spec.fallback_remote}:
            logger.info(
                "Re-pointing remote %s from %s to %s in %s",
                self.remote,
                current,
                self.spec.remote_url,
                self.path,
            )
            self.runner.run("remote", "set-url", self.remote, self.spec.remote_url, cwd=self.path)

    def _diverged(self, local_tip: str, remote_tip: str) -> bool:
        return not status.is_ancestor(
            self.runner,
            self.path,
            local_tip,
            remote_tip,
        ) and not status.is_ancestor(self.runner, self.path, remote_tip, local_tip)

    def _fetch(self) -> None:
        self._enter(SyncState.FETCHING)
        failures: list[tuple[str, GitCommandError]] = []
        for url in self._remote_urls():
            try:
                self.owner.with_retry(
                    lambda url=url: self._fetch_from(url),
                    description=f"git fetch {url}",
                )
            except GitCommandError as error:
                failures.append((url, error))
                logger.warning("Fetch into %s from %s failed: %s", self.path, url, error)
                continue
            return
        raise self._network_failure("fetch", failures)

    def _fetch_from(self, url: str) -> None:
        if url == status.remote_url(self.runner, self.path, self.remote):
            self.runner.run("fetch", "--prune", self.remote, cwd=self.path)
            return
        refspec = f"+refs/heads/*:refs/remotes/{self.remote}/*"
        self.runner.run("fetch", "--prune", url, refspec, cwd=self.path)

    def _target_branch(self) -> str:
        branch = (
            self.spec.branch
            or status.current_branch(self.runner, self.path)
            or status.remote_default_branch(self.runner, self.path, self.remote)
        )
        if branch is None:
            raise GitError(
                "Cannot tell which branch to update (detached HEAD, no remote default)",
                path=self.path,
                remediation="Set 'branch' for this repository in the task file.",
            )
        return branch

    def _remote_ref(self, branch: str, *, has_local: bool) -> str:
        """Push ref first, then upstream, then `<remote>/<branch>`."""

        if has_local:
            for kind in ("push", "upstream"):
                ref = status.tracking_ref(self.runner, self.path, branch, kind)
                if ref is not None and status.resolve_commit(self.runner, self.path, ref):
                    return ref
        return f"refs/remotes/{self.remote}/{branch}"

    def _require_clean(self, reason: str) -> None:
        dirty = status.dirty_paths(self.runner, self.path)
        if dirty:
            shown = ", ".join(line[3:] for line in dirty[:5])
            more = f" and {len(dirty) - 5} more" if len(dirty) > 5 else ""
            raise GitError(
                f"Working tree has uncommitted changes, {reason}: {shown}{more}",
                path=self.path,
                remediation="Commit, stash or discard the changes, then re-run.",
            )

    def _update(
        self,
        branch: str,
        local_tip: str | None,
        remote_ref: str,
        remote_tip: str,
        *,
        checkout: bool,
    ) -> None:
        before = status.resolve_commit(self.runner, self.path, "HEAD")
        if checkout:
            if local_tip is None:
                tracking = remote_ref.removeprefix("refs/remotes/")
                self.runner.run("checkout", "-b", branch, "--track", tracking, cwd=self.path)
            else:
                self.runner.run("checkout", branch, cwd=self.path)
            logger.info("Checked out %s in %s", branch, self.path)

        head = status.resolve_commit(self.runner, self.path, "HEAD")
        behind = (
            head is not None
            and head != remote_tip
            and status.is_ancestor(self.runner, self.path, head, remote_tip)
        )
        if behind:
            self.runner.run("merge", "--ff-only", "--quiet", remote_tip, cwd=self.path)
            logger.info("Fast-forwarded %s in %s to %s", branch, self.path, remote_tip[:12])

        after = status.resolve_commit(self.runner, self.path, "HEAD")
        self.outcome.status = TaskStatus.SUCCESS
        self.outcome.detail = f"{branch} {_short(before)}..{_short(after)}"
        if self.spec.recurse_submodules and self._touched_submodules(before, after):
            self._update_submodules()

    def _touched_submodules(self, before: str | None, after: str | None) -> bool:
        if not (self.path / ".gitmodules").exists():
            return False
        if before is None or after is None:
            return True
        changed = set(
            self.runner.text("diff", "--name-only", before, after, cwd=self.path).splitlines(),
        )
        listing = self.runner.run(
            "config",
            "--file",
            ".gitmodules",
            "--get-regexp",
            r"\.path$",
            cwd=self.path,
            check=False,
        )
        submodule_paths = {
            line.split(" ", 1)[1] for line in listing.stdout.splitlines() if " " in line
        }
        return ".gitmodules" in changed or bool(changed & submodule_paths)

    def _update_submodules(self) -> None:
        self._enter(SyncState.SUBMODULES)
        self.runner.run("submodule", "sync", "--recursive", cwd=self.path)
        try:
            self.owner.with_retry(
                lambda: self.runner.run(
                    "submodule",
                    "update",
                    "--init",
                    "--recursive",
                    cwd=self.path,
                ),
                description=f"git submodule update in {self.path}",
            )
        except GitCommandError as error:
            raise self._network_failure("submodule update", [("submodules", error)]) from error
        logger.info("Updated submodules in %s", self.path)

    def _prune(self) -> None:
        if status.dirty_paths(self.runner, self.path):
            logger.warning("%s: not pruning branches, working tree is not clean", self.path)
            return
        self._enter(SyncState.PRUNING)
        self.outcome.pruned = prune_merged_branches(self.runner, self.path)
        if self.outcome.pruned:
            self.outcome.status = TaskStatus.SUCCESS

    def _remote_urls(self) -> list[str]:
        urls = [self.spec.remote_url]
        if self.spec.fallback_remote and self.spec.fallback_remote != self.spec.remote_url:
            urls.append(self.spec.fallback_remote)
        return urls

    def _network_failure(
        self,
        operation: str,
        failures: list[tuple[str, GitCommandError]],
    ) -> GitError:
        classified = [(url, classify_error(operation, error), error) for url, error in failures]
        for url, classification, _error in classified:
            logger.debug(
                "%s: %s from %s (matched %r)",
                self.path,
                classification.reason_code,
                url,
                classification.matched_pattern,
            )
        parts = [
            f"{url} ({classification.failure_class.value}): {_last_line(error)}"
            for url, classification, error in classified
        ]
        auth = [item for item in classified if item[1].failure_class == GitFailureClass.AUTH]
        url, classification, _error = auth[0] if auth else classified[-1]
        attempts = "both remotes" if len(failures) > 1 else "remote"
        return GitError(
            f"git {operation} failed for {attempts}: " + "; ".join(parts),
            path=self.path,
            state=self.state.value,
            remediation=classification.remediation(url),
        )


def _last_line(error: GitCommandError) -> str:
    lines = [line for line in (error.stderr or str(error)).splitlines() if line.strip()]
    return lines[-1].strip() if lines else str(error)


def _short(commit: str | None) -> str:
    return commit[:12] if commit else "none"
