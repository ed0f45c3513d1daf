"""Read-only repository queries: refs, branches, cleanliness and unpushed work."""

from __future__ import annotations

from pathlib import Path

from upkeep.executors.git.runner import GitOutput, GitRunner

_FIELD_SEPARATOR = "\x1f"


def is_repository(runner: GitRunner, path: Path) -> bool:
    """True when `path` itself is the top level of a git working tree."""

    if not path.is_dir():
        return False
    output = runner.run("rev-parse", "--show-toplevel", cwd=path, check=False)
    if not output.ok:
        return False
    return Path(output.text).resolve() == path.resolve()


def dirty_paths(runner: GitRunner, path: Path) -> list[str]:
    """Staged, unstaged and untracked changes; ignored files do not count."""

    output = runner.run("status", "--porcelain=v1", "--untracked-files=normal", cwd=path)
    return [line for line in output.stdout.splitlines() if line.strip()]


def current_branch(runner: GitRunner, path: Path) -> str | None:
    output = runner.run("symbolic-ref", "--quiet", "--short", "HEAD", cwd=path, check=False)
    return _text_or_none(output)


def resolve_commit(runner: GitRunner, path: Path, ref: str) -> str | None:
    output = runner.run(
        "rev-parse",
        "--verify",
        "--quiet",
        f"{ref}^{{commit}}",
        cwd=path,
        check=False,
    )
    return _text_or_none(output)


def tracking_ref(runner: GitRunner, path: Path, branch: str, kind: str) -> str | None:
    """Full ref name of `branch@{push}` or `branch@{upstream}`, if configured."""

    output = runner.run(
        "rev-parse",
        "--symbolic-full-name",
        f"{branch}@{{{kind}}}",
        cwd=path,
        check=False,
    )
    if not output.ok or not output.text.startswith("refs/"):
        return None
    return output.text


def is_ancestor(runner: GitRunner, path: Path, ancestor: str, descendant: str) -> bool:
    output = runner.run("merge-base", "--is-ancestor", ancestor, descendant, cwd=path, check=False)
    return output.returncode == 0


def remote_url(runner: GitRunner, path: Path, remote: str) -> str | None:
    output = runner.run("config", "--get", f"remote.{remote}.url", cwd=path, check=False)
    return _text_or_none(output)


def remote_default_branch(runner: GitRunner, path: Path, remote: str) -> str | None:
    """Branch name `refs/remotes/<remote>/HEAD` points at, if it is set."""

    output = runner.run(
        "symbolic-ref",
        "--quiet",
        f"refs/remotes/{remote}/HEAD",
        cwd=path,
        check=False,
    )
    prefix = f"refs/remotes/{remote}/"
    if not output.ok or not output.text.startswith(prefix):
        return None
    return output.text.removeprefix(prefix)


def local_branches(runner: GitRunner, path: Path) -> list[tuple[str, str, str]]:
    """`(branch, upstream, push)` short names for every local branch ('' when unset)."""

    fmt = _FIELD_SEPARATOR.join(("%(refname:short)", "%(upstream:short)", "%(push:short)"))
    output = runner.run("for-each-ref", f"--format={fmt}", "refs/heads", cwd=path)
    branches: list[tuple[str, str, str]] = []
    for line in output.stdout.splitlines():
        if not line.strip():
            continue
        name, upstream, push = (line.split(_FIELD_SEPARATOR) + ["", ""])[:3]
        branches.append((name, upstream, push))
    return branches


def unpushed_warnings(runner: GitRunner, path: Path) -> list[str]:
    """Describe stashes and local commits that exist nowhere else."""

    warnings: list[str] = []
    stashes = [line for line in runner.text("stash", "list", cwd=path).splitlines() if line]
    if stashes:
        warnings.append(f"{len(stashes)} stash entr{'y' if len(stashes) == 1 else 'ies'}")

    for branch, upstream, push in local_branches(runner, path):
        compare_to = push or upstream
        if not compare_to:
            warnings.append(f"branch {branch!r} has no upstream or push branch")
            continue
        if resolve_commit(runner, path, compare_to) is None:
            warnings.append(f"branch {branch!r} tracks {compare_to!r}, which no longer exists")
            continue
        count = runner.text("rev-list", "--count", f"{compare_to}..{branch}", cwd=path)
        if count and int(count) > 0:
            warnings.append(f"branch {branch!r} has {count} commit(s) not in {compare_to!r}")
    return warnings


def _text_or_none(output: GitOutput) -> str | None:
    if not output.ok:
        return None
    return output.text or None
