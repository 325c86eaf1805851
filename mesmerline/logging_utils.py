"""Centralized logging configuration for MesmerLine.

Provides helpers to set up console and rotating file handlers with a
consistent format. Intended to be called from the CLI and early in any
host application that embeds the scheduler.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import time
from enum import Enum
from pathlib import Path
from typing import Optional

from .platform_paths import get_log_dir


DEFAULT_LOG_FILENAME = "mesmerline.log"


class LogMode(str, Enum):
    """Logging presets that affect verbosity targets."""

    QUIET = "quiet"
    NORMAL = "normal"
    PERF = "perf"


_LOG_MODE: LogMode = LogMode.NORMAL
_RAMP_TRACE_FLAG = "MESMERLINE_RAMP_TRACE"


def get_default_log_path() -> Path:
    """Default full path to the log file."""
    return get_log_dir() / DEFAULT_LOG_FILENAME


def _parse_log_mode(mode: LogMode | str | None) -> LogMode:
    if mode is None:
        return LogMode.NORMAL
    if isinstance(mode, LogMode):
        return mode
    try:
        return LogMode(mode.lower())
    except ValueError:
        return LogMode.NORMAL


def set_log_mode(mode: LogMode | str | None) -> LogMode:
    """Persist the active log mode for other modules to query later."""

    global _LOG_MODE
    _LOG_MODE = _parse_log_mode(mode)
    return _LOG_MODE


def get_log_mode() -> LogMode:
    return _LOG_MODE


def is_perf_logging_enabled() -> bool:
    return _LOG_MODE is LogMode.PERF


def is_quiet_logging_enabled() -> bool:
    return _LOG_MODE is LogMode.QUIET


def _ramp_trace_allowed() -> bool:
    raw = os.environ.get(_RAMP_TRACE_FLAG, "")
    if raw.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    return is_perf_logging_enabled()


class _RampTraceFilter(logging.Filter):
    """Drops per-tick ramp chatter unless explicitly enabled."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        if "[ramp.trace]" in message and not _ramp_trace_allowed():
            return False
        return True


_RAMP_TRACE_FILTER = _RampTraceFilter()


_PLAIN_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
_KEYVALUE_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"


def _resolve_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _levels_for_mode(level: int, mode: LogMode) -> tuple[int, int]:
    """Return (logger/file level, console level) for a preset."""
    if mode is LogMode.PERF:
        level = min(level, logging.DEBUG)
    console_level = max(logging.WARNING, level) if mode is LogMode.QUIET else level
    return level, console_level


def _open_file_handler(log_path: Path, formatter: logging.Formatter) -> Optional[logging.Handler]:
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
        )
    except OSError as exc:
        # Console-only logging still works without a writable log dir
        logging.getLogger(__name__).debug("File logging disabled for %s: %s", log_path, exc)
        return None
    handler.setFormatter(formatter)
    handler.addFilter(_RAMP_TRACE_FILTER)
    return handler


def _is_console(handler: logging.Handler) -> bool:
    return isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler)


def setup_logging(
    *,
    level: str | int = "INFO",
    log_file: Optional[str | Path] = None,
    json_format: bool = False,
    logger_name: Optional[str] = None,
    log_mode: LogMode | str | None = None,
    add_console: bool = True,
) -> logging.Logger:
    """Configure logging for MesmerLine.

    The first call on a logger attaches a rotating file handler (and a
    console handler unless ``add_console`` is False). Later calls only
    retune levels, so the CLI and an embedding host can both call it.

    - level: str or int (DEBUG/INFO/WARNING/ERROR)
    - log_file: rotating log file path (default: per-user log dir)
    - json_format: key=value single-line records instead of plain text
    - logger_name: configure a sub-logger instead of the root logger
    - log_mode: quiet/normal/perf preset; perf forces DEBUG, quiet keeps
      the console at WARNING or above
    """
    mode = set_log_mode(log_mode) if log_mode is not None else get_log_mode()
    file_level, console_level = _levels_for_mode(_resolve_level(level), mode)

    logger = logging.getLogger(logger_name) if logger_name else logging.getLogger()
    logger.setLevel(file_level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(console_level if _is_console(handler) else file_level)
        return logger

    formatter = logging.Formatter(
        fmt=_KEYVALUE_FORMAT if json_format else _PLAIN_FORMAT,
        datefmt="%H:%M:%S",
    )
    file_handler = _open_file_handler(Path(log_file) if log_file else get_default_log_path(), formatter)
    if file_handler is not None:
        file_handler.setLevel(file_level)
        logger.addHandler(file_handler)

    if add_console:
        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(formatter)
        console.addFilter(_RAMP_TRACE_FILTER)
        logger.addHandler(console)

    return logger


class BurstSampler:
    """Small helper that coalesces bursts of identical log events.

    Call :meth:`record` for every event. When the configured interval elapses,
    the sampler returns the number of events that occurred within that window
    so callers can emit a single summary line instead of one per tick.
    """

    def __init__(self, interval_s: float = 2.0, *, clock=time.monotonic) -> None:
        self.interval_s = max(0.1, float(interval_s))
        self._clock = clock
        self._next_flush = self._clock() + self.interval_s
        self._count = 0

    def record(self, amount: int = 1) -> Optional[int]:
        """Register *amount* events; return the total if window elapsed."""

        self._count += max(0, amount)
        now = self._clock()
        if now >= self._next_flush:
            total = self._count
            self._count = 0
            self._next_flush = now + self.interval_s
            return total
        return None

    def flush(self) -> int:
        """Force-flush and return the accumulated count."""

        total = self._count
        self._count = 0
        self._next_flush = self._clock() + self.interval_s
        return total
