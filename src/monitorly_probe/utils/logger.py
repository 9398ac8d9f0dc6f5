"""Logging configuration."""

import logging
from pathlib import Path
from typing import Optional
from rich.logging import RichHandler
from ..settings import settings

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Get a logger that inherits the probe's root configuration."""
    return logging.getLogger(name)


def setup_logging(file_path: Optional[str] = None, level: Optional[str] = None) -> None:
    """Configure the root logger with a rich console handler and an optional file handler."""
    level_name = (level or settings.log_level).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    # Console handler with rich
    console_handler = RichHandler(
        rich_tracebacks=True,
        show_time=True,
        show_path=False,
    )
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(console_handler)

    # File handler
    if file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(file_handler)
        root.info(f"Logging initialized to file: {file_path}")


class ProbeLogger:
    """
    Logger handle passed explicitly into every probe component.

    Wraps a standard logger and adds ``fatal``, which logs the message
    and terminates the process with exit code 1.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("monitorly_probe")

    @classmethod
    def named(cls, name: str) -> "ProbeLogger":
        return cls(get_logger(name))

    def debug(self, msg: str, *args) -> None:
        self._logger.debug(msg, *args)

    def info(self, msg: str, *args) -> None:
        self._logger.info(msg, *args)

    def warning(self, msg: str, *args) -> None:
        self._logger.warning(msg, *args)

    def error(self, msg: str, *args) -> None:
        self._logger.error(msg, *args)

    def fatal(self, msg: str, *args) -> None:
        self._logger.critical(msg, *args)
        raise SystemExit(1)
