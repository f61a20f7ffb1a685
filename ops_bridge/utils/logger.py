"""
Centralized logging configuration.
Structured JSON records for audit trails (ingest accepts, replays, dead-letter
moves, backfills, gate verdicts) and plain console output for operators.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER_NAME = "ops_bridge"

class JSONFormatter(logging.Formatter):
    """Render a log record, plus any structured fields, as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        fields = getattr(record, "fields", None)
        if fields:
            log_entry.update(fields)
        return json.dumps(log_entry, ensure_ascii=False, default=str)

class StructuredLogger:
    """
    Thin wrapper that turns keyword arguments into structured fields.

    ``bind`` returns a child logger that stamps the given fields on every
    record, which the worker uses to carry ``event_key`` / ``correlation_id``.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._context = dict(context or {})

    def bind(self, **fields: Any) -> "StructuredLogger":
        merged = {**self._context, **{k: v for k, v in fields.items() if v is not None}}
        return StructuredLogger(self.logger.name, merged)

    def _emit(self, level: int, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        fields = {**self._context, **{k: v for k, v in kwargs.items() if v is not None}}
        self.logger.log(level, message, exc_info=exc_info, extra={"fields": fields})

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.DEBUG, message, **kwargs)

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the ``ops_bridge``, ``uvicorn`` and ``sqlalchemy.engine`` loggers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for the rotating JSON log
        enable_console: Whether to log to stdout
    """
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level,
        }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    handler_names = list(handlers)
    logger_levels = {
        ROOT_LOGGER_NAME: log_level,
        "uvicorn": "INFO",
        "sqlalchemy.engine": "WARNING",  # SQL echo is noise outside debugging
    }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level, "handlers": list(handler_names), "propagate": False}
            for name, level in logger_levels.items()
        },
        "root": {"level": log_level, "handlers": list(handler_names)},
    })

def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger under the ``ops_bridge`` namespace."""
    if name.startswith(ROOT_LOGGER_NAME):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")

def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    request_id: Optional[str] = None
) -> None:
    """
    Write an audit record.

    Args:
        event_type: e.g. 'ingest_event_accepted', 'dead_letter_status_changed', 'gate_evaluated'
        details: Event specific fields
        request_id: Request ID for tracing
    """
    get_logger("audit").info(
        f"Business event: {event_type}",
        event_type=event_type,
        request_id=request_id,
        **details
    )

def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Write a timing record for ``operation``."""
    data = {"duration_ms": round(duration_ms, 2)}
    if additional_data:
        data.update(additional_data)
    get_logger("performance").info(
        f"Performance: {operation}",
        operation=operation,
        **data
    )
