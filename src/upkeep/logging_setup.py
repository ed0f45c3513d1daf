"""Console plus per-run file logging, configured once by the CLI."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

LATEST_LOG_NAME = "upkeep_latest.log"


class _ConsoleNoiseFilter(logging.Filter):
    """Keep our own records; let other libraries and captured warnings through only at ERROR+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "upkeep" or record.name.startswith("upkeep."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: Path,
    run_stamp: str,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """Configure the root logger and return the path of this run's log file.

    Call this once, before the first task runs.
    """

    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"upkeep_{run_stamp}.log"

    root = logging.getLogger()
    root.setLevel(min(console_level, file_level))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(threadName)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _point_latest_link(log_dir / LATEST_LOG_NAME, log_file)
    logging.captureWarnings(True)
    return log_file


def _point_latest_link(link: Path, target: Path) -> None:
    try:
        if link.is_symlink() or link.exists():
            link.unlink()
        os.symlink(target.name, link)
    except OSError as error:
        logging.getLogger(__name__).debug("Could not update %s: %s", link, error)
