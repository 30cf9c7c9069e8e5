"""Logging setup for igdctl.

Every record can carry three pieces of mapping context: a correlation id
(one per CLI session, extended per discovery event and per reconcile
job), the gateway being worked on, and the port concerned. The console
formatter renders them inline; the structured formatter emits them as
JSON fields.
"""

from __future__ import annotations

import itertools
import json
import logging
import logging.config
import sys
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from igdctl.exceptions import IGDCtlError

if TYPE_CHECKING:
    from igdctl.models import ObservabilityConfig

correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
gateway_name: ContextVar[str | None] = ContextVar("gateway_name", default=None)

# Placeholder for context that is not set
UNSET = "-"


class CorrelationFilter(logging.Filter):
    """Stamp records with the current correlation id and gateway."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or UNSET
        record.gateway = gateway_name.get() or UNSET
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with the mapping context as fields."""

    CONTEXT_KEYS: ClassVar[tuple[str, ...]] = (
        "correlation_id",
        "gateway",
        "port",
        "attempt",
        "details",
    )

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in self.CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None and value != UNSET:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: coloured level plus a ``%(context)s`` field.

    ``context`` renders as ``[correlation gateway port]`` with unset parts
    left out, or as an empty string when nothing is set.
    """

    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET: ClassVar[str] = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        # Other handlers see the same record
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname)
        if color is not None:
            record.levelname = f"{color}{record.levelname}{self.RESET}"

        parts = [
            str(value)
            for value in (
                getattr(record, "correlation_id", None),
                getattr(record, "gateway", None),
                getattr(record, "port", None),
            )
            if value is not None and value != UNSET
        ]
        record.context = f"[{' '.join(parts)}]" if parts else ""
        return super().format(record)


class MappingLogContext:
    """Tag records logged inside the block with a job id and a gateway.

    The job id is ``<job>-<n>``, appended to the session correlation id
    when one is set, so every line of one reconcile pass or one discovery
    event can be grepped together.
    """

    _sequence = itertools.count(1)

    def __init__(self, job: str, gateway: str | None = None) -> None:
        self.job = job
        self.gateway = gateway
        self.job_id: str | None = None
        self._tokens: tuple[Any, Any] | None = None

    def __enter__(self) -> MappingLogContext:
        job_id = f"{self.job}-{next(self._sequence)}"
        parent = correlation_id.get()
        self.job_id = f"{parent}/{job_id}" if parent else job_id
        self._tokens = (
            correlation_id.set(self.job_id),
            gateway_name.set(self.gateway or gateway_name.get()),
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if self._tokens is not None:
            corr_token, gateway_token = self._tokens
            gateway_name.reset(gateway_token)
            correlation_id.reset(corr_token)
            self._tokens = None
        return False


def _console_handler(config: ObservabilityConfig) -> dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "level": config.log_level.value,
        "formatter": "structured" if config.structured_logging else "colored",
        "filters": ["correlation"],
        "stream": sys.stderr,
    }


def _file_handler(config: ObservabilityConfig) -> dict[str, Any]:
    Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": config.log_level.value,
        "formatter": "structured" if config.structured_logging else "plain",
        "filters": ["correlation"],
        "filename": config.log_file,
        "maxBytes": 10 * 1024 * 1024,  # 10MB
        "backupCount": 5,
    }


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure the ``igdctl`` logger tree from ``config``."""
    handlers = {"console": _console_handler(config)}
    if config.log_file:
        handlers["file"] = _file_handler(config)

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "colored": {
                    "()": ColoredFormatter,
                    "format": "%(asctime)s %(levelname)s %(context)s %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
                "structured": {"()": StructuredFormatter},
                "plain": {
                    "format": (
                        "%(asctime)s %(levelname)s %(correlation_id)s "
                        "gw=%(gateway)s %(name)s: %(message)s"
                    ),
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "filters": {"correlation": {"()": CorrelationFilter}},
            "handlers": handlers,
            "loggers": {
                "igdctl": {
                    "level": config.log_level.value,
                    "handlers": list(handlers),
                    "propagate": False,
                },
            },
        }
    )


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set the session correlation id (a fresh short uuid when None)."""
    if corr_id is None:
        corr_id = uuid.uuid4().hex[:12]
    correlation_id.set(corr_id)
    return corr_id


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log an exception with context; package errors carry their details."""
    if isinstance(exc, IGDCtlError):
        logger.error(
            "%s: %s",
            context,
            exc.message,
            extra={"details": exc.details},
            exc_info=True,
        )
    else:
        logger.error("%s: %s", context, exc, exc_info=True)
