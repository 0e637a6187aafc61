"""Logging for the CLI and the release engine.

Records go to stderr so table and json output on stdout stays parseable.
Release code logs through ``StructuredLogger``, which appends bound
``key=value`` fields (release id, host) to every message.
"""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "releasectl"
QUIET_LIBRARIES = ("httpx", "httpcore")


class LogLevel(str, Enum):
    """Configurable log level."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @classmethod
    def from_flags(cls, verbose: int, quiet: bool, default: "LogLevel") -> "LogLevel":
        """Map ``-v``/``-vv``/``--quiet`` onto a level; flags beat config."""
        if verbose >= 2:
            return cls.DEBUG
        if verbose == 1:
            return cls.INFO
        if quiet:
            return cls.ERROR
        return default

    @property
    def numeric(self) -> int:
        return logging.getLevelName(self.value.upper())


def setup_logging(level: LogLevel = LogLevel.WARNING, rich_output: bool = True) -> None:
    """Route all logs to stderr at ``level``.

    Without colour, lines use a plain timestamped format that reads well in
    CI job logs.
    """
    if rich_output:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.numeric)

    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``releasectl`` namespace."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class StructuredLogger:
    """Logger carrying bound fields such as the release id and host."""

    def __init__(self, name: str, fields: dict[str, Any] | None = None):
        self._logger = get_logger(name)
        self._fields = fields or {}

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a logger with ``fields`` added to the bound ones."""
        return StructuredLogger(self._logger.name, {**self._fields, **fields})

    def _log(self, level: int, message: str, fields: dict[str, Any], exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._fields, **fields}
        if merged:
            message = f"{message} [{' '.join(f'{k}={v}' for k, v in merged.items())}]"
        self._logger.log(level, message, exc_info=exc_info)

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._log(logging.ERROR, message, fields, exc_info=True)
