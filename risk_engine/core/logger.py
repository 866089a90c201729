"""
Logging for the position risk engine.

Every module logs through ``get_module_logger`` under the ``risk_engine``
namespace; ``create_engine_logger`` attaches the console and rotating-file
outputs to that namespace once at start-up. Close attempts log through a
position-scoped adapter so each line names the position and pair.
"""

import logging
import logging.handlers
import sys
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import IO, Any, Dict, Iterable, MutableMapping, Optional, Tuple


LOGGER_ROOT = "risk_engine"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
# HTTP plumbing under the exchange client; chatty at DEBUG.
NOISY_LOGGERS = ("urllib3", "binance")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class ILogFormatter(ABC):
    """Strategy producing the line layout for engine output."""

    @abstractmethod
    def get_formatter(self) -> logging.Formatter:
        """Return the ``logging.Formatter`` for this layout."""


class CompactLogFormatter(ILogFormatter):
    """Time, level and message; the logger name column is optional."""

    def __init__(self, include_module: bool = True) -> None:
        self._include_module = include_module

    def get_formatter(self) -> logging.Formatter:
        columns = ["%(asctime)s", "%(levelname)s", "%(message)s"]
        if self._include_module:
            columns.insert(1, "%(name)s")
        return logging.Formatter(" - ".join(columns), datefmt=DATE_FORMAT)


class EngineLogFormatter(ILogFormatter):
    """Fixed-width columns wide enough for ``risk_engine.<module>`` names."""

    def get_formatter(self) -> logging.Formatter:
        return logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)-32s | %(funcName)-20s | %(message)s",
            datefmt=DATE_FORMAT,
        )


class ILogHandler(ABC):
    """Strategy creating one output for the engine logger."""

    @abstractmethod
    def create_handler(self, formatter: logging.Formatter) -> logging.Handler:
        """
        Build the handler.

        Args:
            formatter: Layout to attach

        Returns:
            logging.Handler: Ready-to-attach handler
        """


class StreamLogHandler(ILogHandler):
    """Console output, stderr unless another stream is given."""

    def __init__(self, level: int = logging.INFO, stream: Optional[IO[str]] = None) -> None:
        self._level = level
        self._stream = stream

    def create_handler(self, formatter: logging.Formatter) -> logging.Handler:
        handler = logging.StreamHandler(self._stream or sys.stderr)
        handler.setLevel(self._level)
        handler.setFormatter(formatter)
        return handler


class RotatingFileLogHandler(ILogHandler):
    """Size-rotated log file; the parent directory is created on demand."""

    def __init__(
        self,
        log_file_path: str,
        level: int = logging.DEBUG,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
    ) -> None:
        """
        Args:
            log_file_path: Target file
            level: Minimum level written to the file
            max_bytes: Size that triggers rotation
            backup_count: Rotated files kept
        """
        self._path = Path(log_file_path)
        self._level = level
        self._max_bytes = max_bytes
        self._backup_count = backup_count

    def create_handler(self, formatter: logging.Formatter) -> logging.Handler:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            filename=str(self._path),
            maxBytes=self._max_bytes,
            backupCount=self._backup_count,
        )
        handler.setLevel(self._level)
        handler.setFormatter(formatter)
        return handler


def daily_log_path(log_dir: str, name: str, day: Optional[date] = None) -> Path:
    """``<log_dir>/<name>_<YYYYMMDD>.log`` for ``day`` (today by default)."""
    return Path(log_dir) / f"{name}_{(day or date.today()).strftime('%Y%m%d')}.log"


class LoggerManager:
    """
    Owns the outputs attached to one named logger.

    ``configure`` detaches and closes whatever the previous call attached, so
    the application can reconfigure logging without duplicating lines.
    """

    def __init__(self, name: str = LOGGER_ROOT) -> None:
        self._name = name
        self._logger: Optional[logging.Logger] = None
        self._handlers: Dict[str, logging.Handler] = {}

    @property
    def is_configured(self) -> bool:
        return self._logger is not None

    def configure(
        self,
        level: int = logging.INFO,
        formatter: Optional[ILogFormatter] = None,
        handlers: Optional[Dict[str, ILogHandler]] = None,
    ) -> logging.Logger:
        """
        Attach outputs to the logger, replacing any previously attached.

        Args:
            level: Logger level
            formatter: Layout shared by all outputs, compact by default
            handlers: Output strategies by name; console plus a daily file
                under ``logs/`` when omitted

        Returns:
            logging.Logger: The configured logger
        """
        logger = logging.getLogger(self._name)
        logger.setLevel(level)
        for attached in list(logger.handlers):
            logger.removeHandler(attached)
            attached.close()
        self._handlers.clear()

        layout = (formatter or CompactLogFormatter()).get_formatter()
        if handlers is None:
            handlers = {
                "console": StreamLogHandler(logging.INFO),
                "file": RotatingFileLogHandler(str(daily_log_path("logs", self._name))),
            }
        for output_name, strategy in handlers.items():
            handler = strategy.create_handler(layout)
            logger.addHandler(handler)
            self._handlers[output_name] = handler

        self._logger = logger
        return logger

    @property
    def logger(self) -> logging.Logger:
        """
        Raises:
            RuntimeError: If ``configure`` has not run
        """
        if self._logger is None:
            raise RuntimeError(f"Logger '{self._name}' is not configured")
        return self._logger

    def set_level(self, level: int) -> None:
        """Change the level of the logger and every attached output."""
        if self._logger is None:
            return
        self._logger.setLevel(level)
        for handler in self._handlers.values():
            handler.setLevel(level)

    def handler(self, output_name: str) -> Optional[logging.Handler]:
        return self._handlers.get(output_name)


class PositionLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the position id and pair."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        position_id = self.extra.get("position_id", "?")
        pair = self.extra.get("pair", "?")
        return f"[{position_id} {pair}] {msg}", kwargs


def parse_log_level(log_level: str) -> int:
    """Level constant for a name such as ``"debug"``; unknown names give INFO."""
    return _LEVELS.get(str(log_level).upper(), logging.INFO)


def create_engine_logger(
    name: str = LOGGER_ROOT,
    log_level: str = "INFO",
    log_dir: Optional[str] = "logs",
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> logging.Logger:
    """
    Configure the engine logger used by the application.

    Console output stays at INFO; the daily file, when ``log_dir`` is set,
    follows ``log_level``.

    Args:
        name: Logger name, normally the package root
        log_level: Level name from configuration
        log_dir: Directory for the daily log file, None for console only
        quiet_loggers: Third-party loggers capped at WARNING

    Returns:
        logging.Logger: Configured logger
    """
    level = parse_log_level(log_level)
    outputs: Dict[str, ILogHandler] = {"console": StreamLogHandler(logging.INFO)}
    if log_dir:
        outputs["file"] = RotatingFileLogHandler(str(daily_log_path(log_dir, name)), level=level)

    for noisy in quiet_loggers:
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    return LoggerManager(name).configure(level, EngineLogFormatter(), outputs)


def get_module_logger(module_name: str) -> logging.Logger:
    """Logger ``risk_engine.<module_name>``; inherits the engine outputs."""
    return logging.getLogger(f"{LOGGER_ROOT}.{module_name}")


def get_position_logger(module_name: str, position_id: str, pair: str) -> PositionLogAdapter:
    """Module logger whose lines are tagged with one position."""
    return PositionLogAdapter(
        get_module_logger(module_name), {"position_id": position_id, "pair": pair}
    )
