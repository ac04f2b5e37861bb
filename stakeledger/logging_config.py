"""
Structured Logging Configuration

Provides:
- Correlation IDs tying together the log lines and events of one operation
- Ledger context (participant, position_id) carried in context variables
- JSON lines for the rotating log file, compact lines for the console
- Keyword context on every call: logger.info("Staked", amount=1000)
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


# Ledger context; a field is omitted from log lines while its value is None.
_CONTEXT: Dict[str, contextvars.ContextVar] = {
    name: contextvars.ContextVar(name, default=None)
    for name in ("correlation_id", "participant", "position_id")
}

# Keyword arguments the logging module itself understands.
_LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})


class CorrelationContext:
    """
    Scope one ledger operation.

    Sets a correlation id (generated if not given) plus whichever of
    ``participant`` and ``position_id`` are known; all are restored on exit,
    so contexts nest.
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        participant: Optional[str] = None,
        position_id: Optional[int] = None,
    ):
        self.correlation_id = correlation_id or uuid4().hex
        self.participant = participant
        self.position_id = position_id
        self._resets = []

    def __enter__(self):
        values = {
            "correlation_id": self.correlation_id,
            "participant": self.participant,
            "position_id": self.position_id,
        }
        for name, value in values.items():
            if value is not None:
                var = _CONTEXT[name]
                self._resets.append((var, var.set(value)))
        return self

    def __exit__(self, *args):
        while self._resets:
            var, token = self._resets.pop()
            var.reset(token)


def current_context() -> Dict[str, Any]:
    """The ledger context fields set in the current context."""
    fields = {}
    for name, var in _CONTEXT.items():
        value = var.get()
        if value is not None:
            fields[name] = value
    return fields


def get_correlation_id() -> Optional[str]:
    return _CONTEXT["correlation_id"].get()


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ledger context and keyword data."""

    def __init__(
        self,
        include_traceback: bool = True,
        include_context: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.include_context = include_context
        self.extra_fields = dict(extra_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
            "thread_name": record.threadName,
        }
        if self.include_context:
            entry.update(current_context())
        entry.update(self.extra_fields)

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data

        if record.exc_info and self.include_traceback:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


class StructuredFormatter(logging.Formatter):
    """
    Console lines: ``[time] [LEVEL] [logger] message [key=value, ...]``.

    The correlation id is shortened to 8 characters.
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__(
            fmt="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if self.use_color and sys.stdout.isatty() and record.levelname in self.LEVEL_COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.LEVEL_COLORS[record.levelname]}{record.levelname}{self.RESET}"

        line = super().format(record)

        fields = current_context()
        if "correlation_id" in fields:
            fields["correlation_id"] = fields["correlation_id"][:8]
        fields.update(getattr(record, "extra_data", None) or {})
        if not fields:
            return line

        suffix = "[" + ", ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        # Keep the traceback (appended by Formatter.format) after the context.
        head, sep, tail = line.partition("\n")
        return f"{head} {suffix}{sep}{tail}"

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(datefmt or self.datefmt)


class StructuredLogger(logging.LoggerAdapter):
    """
    Adapter turning keyword arguments into the record's ``extra_data``.

        logger.warning("unstake rejected", code="STATE_002")
    """

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    @property
    def name(self) -> str:
        return self.logger.name

    def process(self, msg, kwargs):
        data = {k: kwargs.pop(k) for k in list(kwargs) if k not in _LOGGING_KWARGS}
        if data:
            kwargs["extra"] = {**kwargs.get("extra", {}), "extra_data": data}
        return msg, kwargs


def _attach(root: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def setup_logging(
    log_dir: Union[str, Path, None] = "logs",
    log_file: str = "stakeledger.log",
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 10,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Replace the root logger's handlers.

    Args:
        log_dir: Directory for the rotating log file; None disables it
        log_file: Name of the log file
        level: Level name or number, applied to the root logger and handlers
        json_format: JSON lines in the file (otherwise console-style lines)
        console_output: Also log to stdout
        max_bytes: Rotate the file after this many bytes
        backup_count: Rotated files to keep
        extra_fields: Constant fields added to every JSON line

    Returns:
        The root logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_formatter = (
            JSONFormatter(extra_fields=extra_fields) if json_format else StructuredFormatter(use_color=False)
        )
        _attach(
            root,
            logging.handlers.RotatingFileHandler(
                path / log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            ),
            level,
            file_formatter,
        )

    if console_output:
        _attach(root, logging.StreamHandler(sys.stdout), level, StructuredFormatter(use_color=True))

    return root


def get_logger(name: str) -> StructuredLogger:
    """Structured logger for ``name``."""
    return StructuredLogger(logging.getLogger(name))
