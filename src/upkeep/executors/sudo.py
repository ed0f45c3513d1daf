"""Ask for sudo once before a run and keep the credential cached while tasks execute."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from collections.abc import Callable
from typing import Any

from upkeep.errors import CommandError

logger = logging.getLogger(__name__)

# Refresh at most this long (24 hours at the default interval).
MAX_REFRESHES = 1440


class SudoKeeper:
    """Prompts for the sudo password up front and refreshes it in the background.

    Concurrent main tasks that call `sudo` would otherwise race for one terminal
    prompt. With passwordless sudo (`sudo -kn true` succeeds) or when already root,
    nothing is prompted and no refresher runs.
    """

    def __init__(
        self,
        *,
        runner: Callable[..., Any] = subprocess.run,
        refresh_seconds: float = 60.0,
        is_root: Callable[[], bool] | None = None,
    ) -> None:
        self._runner = runner
        self.refresh_seconds = refresh_seconds
        self._is_root = is_root or (lambda: os.geteuid() == 0)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def refreshing(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def acquire(self) -> None:
        """Make sure sudo works without a prompt for the rest of the run."""

        if self._is_root():
            logger.debug("Running as root, no sudo prompt needed")
            return
        if self._sudo("-kn", "true", quiet=True) == 0:
            logger.info("Passwordless sudo is enabled, not prompting for sudo")
            return

        logger.info("Prompting for your sudo password...")
        exit_code = self._sudo("-v")
        if exit_code != 0:
            raise CommandError(
                "Could not obtain sudo credentials",
                argv=("sudo", "-v"),
                exit_code=exit_code,
                remediation="Run `sudo -v` yourself, or deselect the tasks that need sudo.",
            )
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._refresh,
            name="upkeep-sudo-refresh",
            daemon=True,
        )
        self._thread.start()

    def release(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _refresh(self) -> None:
        for _ in range(MAX_REFRESHES):
            if self._stop.wait(self.refresh_seconds):
                return
            exit_code = self._sudo("-vn", quiet=True)
            if exit_code != 0:
                logger.warning("Refreshing sudo with 'sudo -vn' failed with code %d", exit_code)

    def _sudo(self, *args: str, quiet: bool = False) -> int:
        argv = ["sudo", *args]
        logger.debug("Running %s", " ".join(argv))
        redirect = subprocess.DEVNULL if quiet else None
        try:
            completed = self._runner(argv, stdout=redirect, stderr=redirect, check=False)
        except FileNotFoundError as error:
            raise CommandError(
                "sudo is not installed",
                argv=tuple(argv),
                remediation="Install sudo or deselect the tasks that need it.",
            ) from error
        return completed.returncode
