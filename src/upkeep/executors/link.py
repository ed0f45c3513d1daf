"""Symlink Linker: mirror a dotfiles tree into a destination as symlinks."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from upkeep.errors import LinkError
from upkeep.tasks.models import LinkSpec, TaskStatus
from upkeep.tasks.resources import BackupDirectory, normalize_path

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Never mirrored from the top of the source tree.
IGNORED_TOP_LEVEL = frozenset({".git"})


@dataclass(slots=True)
class LinkReport:
    """What one link pass changed under `to_directory`."""

    from_directory: Path
    to_directory: Path
    linked: list[Path] = field(default_factory=list)
    backed_up: list[tuple[Path, Path]] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)
    unchanged: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.linked or self.backed_up or self.removed)

    @property
    def status(self) -> TaskStatus:
        return TaskStatus.SUCCESS if self.changed else TaskStatus.SKIPPED

    def describe(self) -> str:
        return (
            f"linked={len(self.linked)} backed_up={len(self.backed_up)} "
            f"removed={len(self.removed)} unchanged={self.unchanged}"
        )


class SymlinkLinker:
    """Reconciles `to_directory` so every source file has a symlink pointing at it.

    Conflicting entries are moved into the run's shared backup directory, which is
    created only when the first conflict of the run needs it. A second pass over an
    unchanged source tree touches nothing and reports Skipped.
    """

    def __init__(self, backup: BackupDirectory) -> None:
        self._backup = backup

    def link(self, spec: LinkSpec) -> LinkReport:
        if normalize_path(spec.backup_root) != self._backup.root:
            raise LinkError(
                f"Link task backs up into {spec.backup_root}, but this run's backup root is "
                f"{self._backup.root}",
                path=spec.to_directory,
                remediation="Use one backup_dir for every link task in the task file.",
            )
        from_directory = spec.from_directory.expanduser()
        if not from_directory.is_dir():
            raise LinkError(
                "Link source directory does not exist",
                path=from_directory,
                remediation="Clone your dotfiles first or fix link.from in the task file.",
            )
        from_directory = from_directory.resolve()
        to_directory = spec.to_directory.expanduser()
        if not to_directory.is_dir():
            _guard(lambda: to_directory.mkdir(parents=True, exist_ok=True), to_directory)
        to_directory = to_directory.resolve()

        report = LinkReport(from_directory=from_directory, to_directory=to_directory)
        logger.debug(
            "Linking %s -> %s (backup root %s)",
            from_directory,
            to_directory,
            spec.backup_root,
        )

        mirrored_dirs: set[Path] = {Path()}
        for relative, is_dir in _walk(from_directory):
            if is_dir:
                mirrored_dirs.add(relative)
                continue
            self._ensure_parent(relative, report=report)
            self._link_one(relative, report=report)

        for relative in sorted(mirrored_dirs):
            self._remove_stale_links(to_directory / relative, report=report)

        logger.info("Link %s -> %s: %s", from_directory, to_directory, report.describe())
        return report

    def _ensure_parent(self, relative: Path, *, report: LinkReport) -> None:
        current = report.to_directory
        for part in relative.parent.parts:
            current = current / part
            if current.is_symlink():
                if _points_into(current, report.from_directory):
                    _guard(current.unlink, current)
                    report.removed.append(current)
                    logger.info("Replacing link %s with a mirrored directory", current)
                elif current.is_dir():
                    continue
                else:
                    self._displace(current, report=report)
            elif current.is_dir():
                continue
            elif os.path.lexists(current):
                logger.warning("File %s is in the way of a mirrored directory", current)
                self._displace(current, report=report)
            _guard(current.mkdir, current)

    def _link_one(self, relative: Path, *, report: LinkReport) -> None:
        source = report.from_directory / relative
        target = report.to_directory / relative

        if target.is_symlink():
            if _link_target(target) == source:
                report.unchanged += 1
                return
            self._displace(target, report=report)
        elif os.path.lexists(target):
            kind = "directory" if target.is_dir() else "file"
            logger.warning("Existing %s at %s conflicts with %s", kind, target, source)
            self._displace(target, report=report)

        _guard(lambda: target.symlink_to(source), target)
        report.linked.append(target)
        logger.debug("Linked %s -> %s", target, source)

    def _displace(self, path: Path, *, report: LinkReport) -> None:
        """Get `path` out of the way: delete stale links into the source, back up the rest."""

        if _is_stale_link(path, report.from_directory):
            _guard(path.unlink, path)
            report.removed.append(path)
            logger.info("Removed stale link %s", path)
            return

        relative = path.relative_to(report.to_directory)
        destination = _guard(lambda: self._backup.store(path, relative), path)
        report.backed_up.append((path, destination))

    def _remove_stale_links(self, directory: Path, *, report: LinkReport) -> None:
        if directory.is_symlink() or not directory.is_dir():
            return
        for entry in sorted(directory.iterdir()):
            if entry.is_symlink() and _is_stale_link(entry, report.from_directory):
                _guard(entry.unlink, entry)
                report.removed.append(entry)
                logger.info("Removed stale link %s", entry)


def _guard(operation: Callable[[], T], path: Path) -> T:
    try:
        return operation()
    except PermissionError as error:
        raise LinkError(
            "Permission denied",
            path=path,
            remediation=f"Check ownership and permissions of {path.parent}.",
        ) from error
    except OSError as error:
        raise LinkError(f"Filesystem operation failed ({error.strerror})", path=path) from error


def _walk(root: Path) -> Iterator[tuple[Path, bool]]:
    """Yield `(relative_path, is_dir)` for the source tree; symlinked dirs count as files."""

    for current, dirnames, filenames in os.walk(root):
        current_path = Path(current)
        if current_path == root:
            dirnames[:] = [name for name in dirnames if name not in IGNORED_TOP_LEVEL]
            filenames = [name for name in filenames if name not in IGNORED_TOP_LEVEL]
        dirnames.sort()
        for name in list(dirnames):
            if (current_path / name).is_symlink():
                dirnames.remove(name)
                filenames.append(name)
        for name in dirnames:
            yield (current_path / name).relative_to(root), True
        for name in sorted(filenames):
            yield (current_path / name).relative_to(root), False


def _link_target(link: Path) -> Path:
    raw = Path(os.readlink(link))
    if not raw.is_absolute():
        raw = link.parent / raw
    return Path(os.path.normpath(raw))


def _points_into(link: Path, directory: Path) -> bool:
    return _link_target(link).is_relative_to(directory)


def _is_stale_link(path: Path, from_directory: Path) -> bool:
    """A broken symlink whose target used to live in the source tree."""

    return path.is_symlink() and not path.exists() and _points_into(path, from_directory)
