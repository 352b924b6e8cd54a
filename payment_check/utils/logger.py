"""
Logging setup for the payment check service.

Every logger lives under the `payment_check` namespace. Keyword arguments
passed to a `StructuredLogger` call travel on the record as `extra_data`;
the JSON file handler flattens them into the log line so a run can be
followed by its `run_id` (and `gateway` / `chunk_index` inside a branch).
"""
import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

ROOT_LOGGER_NAME = "payment_check"

# Context keys placed first in each JSON line
_LEADING_KEYS = ("run_id", "gateway", "chunk_index", "payment_id", "request_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, structured context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        context: Dict[str, Any] = dict(getattr(record, "extra_data", None) or {})
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _LEADING_KEYS:
            if key in context:
                entry[key] = context.pop(key)
        entry.update(context)
        entry["location"] = f"{record.module}:{record.funcName}:{record.lineno}"
        entry["thread"] = record.threadName
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """Thin wrapper over `logging.Logger` taking keyword context.

    `None` values are dropped from the context; `exc_info` is forwarded.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **context: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        exc_info = context.pop("exc_info", None)
        extra_data = {k: v for k, v in context.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data})

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, **context)


def _handlers(log_level: str, log_file: Optional[str], enable_console: bool) -> Dict[str, Dict[str, Any]]:
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "plain",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    return handlers


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the `payment_check` logger tree.

    Args:
        log_level: Level for service loggers and handlers
        log_file: Rotating JSON log file; omitted means no file output
        enable_console: Emit plain-text lines on stdout
    """
    handlers = _handlers(log_level, log_file, enable_console)
    names: List[str] = list(handlers)
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "plain": {
                "format": "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            ROOT_LOGGER_NAME: {"level": log_level, "handlers": names, "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": names},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger for `name`, nested under the service namespace."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    run_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """Audit line for a run lifecycle event (started, completed, failed)."""
    get_logger("audit").info(
        f"Business event: {event_type}",
        event_type=event_type,
        run_id=run_id,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Timing line for an operation, in milliseconds."""
    get_logger("performance").info(
        f"Performance: {operation}",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **(additional_data or {})
    )
