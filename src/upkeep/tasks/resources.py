"""Run-scoped shared resources: the lazily created backup directory and per-path locks."""

from __future__ import annotations

import logging
import os
import shutil
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class BackupDirectory:
    """The run's backup directory `<root>/<run_stamp>`, created at most once, on first use.

    Every link task of a run stores displaced files here, whichever task gets there first
    creates it.
    """

    def __init__(self, root: Path, run_stamp: str) -> None:
        self.root = normalize_path(root)
        self._path = self.root / run_stamp
        self._lock = threading.Lock()
        self._created = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def created(self) -> bool:
        with self._lock:
            return self._created

    def store(self, source: Path, relative: Path) -> Path:
        """Move `source` to `relative` inside the backup directory and return where it went.

        Name collisions get a numeric suffix instead of replacing an earlier backup.
        """

        with self._lock:
            if not self._created:
                self._path.mkdir(parents=True, exist_ok=True)
                self._created = True
                logger.info("Created backup directory %s", self._path)
            destination = self._path / relative
            suffix = 1
            while os.path.lexists(destination):
                destination = self._path / relative.parent / f"{relative.name}.{suffix}"
                suffix += 1
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(destination))
        logger.info("Moved %s to backup %s", source, destination)
        return destination


class PathLocks:
    """Keyed mutual exclusion over filesystem locations.

    With `overlapping=True` a held path also blocks every ancestor and descendant
    path, so two trees that nest inside each other are never mutated concurrently.
    Distinct, non-nested paths never wait on each other.
    """

    def __init__(self, *, overlapping: bool) -> None:
        self.overlapping = overlapping
        self._condition = threading.Condition()
        self._held: set[Path] = set()

    @contextmanager
    def hold(self, path: Path) -> Iterator[Path]:
        key = normalize_path(path)
        with self._condition:
            if self._conflicts(key):
                logger.debug("Waiting for lock on %s", key)
            self._condition.wait_for(lambda: not self._conflicts(key))
            self._held.add(key)
        try:
            yield key
        finally:
            with self._condition:
                self._held.discard(key)
                self._condition.notify_all()

    def _conflicts(self, key: Path) -> bool:
        if key in self._held:
            return True
        if not self.overlapping:
            return False
        return any(key.is_relative_to(held) or held.is_relative_to(key) for held in self._held)


def normalize_path(path: Path) -> Path:
    return Path(path).expanduser().resolve(strict=False)
