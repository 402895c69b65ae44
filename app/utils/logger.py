"""
Logging setup for the import service.

Every module logs through ``get_logger(__name__)``; keyword arguments become
JSON fields in the file log (``run_id=..., chunk_index=...``). Import runs
bind their identifiers once with ``logger.bind(run_id=..., clinic_id=...)``.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

# Context keys rendered first so lines of one run line up when grepping.
_LEADING_KEYS = ("run_id", "clinic_id", "chunk_index", "request_id")

# Third-party loggers that get their own level.
_LIBRARY_LEVELS = {
    "uvicorn": "INFO",
    "sqlalchemy.engine": "WARNING",
    "aiohttp.client": "WARNING",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line: base record fields, then the structured context."""

    def format(self, record: logging.LogRecord) -> str:
        context: Dict[str, Any] = dict(getattr(record, "context", None) or {})
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _LEADING_KEYS:
            if key in context:
                entry[key] = context.pop(key)
        entry.update(context)
        entry["src"] = f"{record.module}:{record.funcName}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """Thin wrapper that turns keyword arguments into structured context."""

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        """Child logger that adds ``context`` to every record."""
        merged = {**self.context, **{k: v for k, v in context.items() if v is not None}}
        return StructuredLogger(self.logger.name, merged)

    def _emit(self, level: int, message: str, kwargs: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", None)
        context = {**self.context, **{k: v for k, v in kwargs.items() if v is not None}}
        self.logger.log(level, message, exc_info=exc_info, extra={"context": context}, stacklevel=3)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.ERROR, message, kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the ``app`` logger tree and the noisy library loggers.

    Console output stays human readable; the optional rotating file gets JSON.
    """
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
    names = list(handlers)

    loggers: Dict[str, Dict[str, Any]] = {"app": {"level": log_level, "handlers": names, "propagate": False}}
    for library, level in _LIBRARY_LEVELS.items():
        loggers[library] = {"level": level, "handlers": names, "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "plain": {
                "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": log_level, "handlers": names},
    })


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name if name.startswith("app") else f"app.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    run_id: Optional[str] = None,
    clinic_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """Import lifecycle event (``import_started``, ``import_failed``...) on the ``app.events`` logger."""
    get_logger("app.events").info(
        event_type,
        event_type=event_type,
        run_id=run_id,
        clinic_id=clinic_id,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    get_logger("app.performance").info(
        f"{operation} took {duration_ms:.1f}ms",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **(additional_data or {})
    )
