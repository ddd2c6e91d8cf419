"""
Structured JSON logging for the realtime core.

Every module logs through a module-level logger under ``martini_realtime``.
Hosts that ship logs to a collector can switch that hierarchy to one JSON
object per line, with the emitting component, the subscription a record
belongs to and the details of any realtime error as separate fields.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .exceptions import RealtimeError

if TYPE_CHECKING:
    from .config import RealtimeConfig

PACKAGE_LOGGER = "martini_realtime"

# Subscription context, emitted in this order ahead of any other extras
CONTEXT_FIELDS = ("project_id", "generation", "event_name", "connection_status")

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message"}


def component_for(logger_name: str) -> str:
    """Name of the emitting component, relative to the package logger.

    ``martini_realtime.sync.session`` becomes ``sync.session``; loggers
    outside the package keep their full name.
    """
    prefix = PACKAGE_LOGGER + "."
    if logger_name.startswith(prefix):
        return logger_name[len(prefix):]
    return logger_name


class StructuredJsonFormatter(logging.Formatter):
    """
    Render realtime log records as single-line JSON.

    Fields, in order: ``timestamp`` (UTC, ISO 8601), ``level``,
    ``component``, ``message``, then whichever subscription context fields
    are set, then ``static_fields`` and any other extras. A
    :class:`RealtimeError` in ``exc_info`` is emitted under ``error`` as its
    type, message and ``details`` next to the formatted traceback.
    """

    def __init__(self, static_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "component": component_for(record.name),
            "message": record.getMessage(),
        }

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_obj[key] = value

        log_obj.update(self.static_fields)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in CONTEXT_FIELDS or key.startswith("_"):
                continue
            log_obj[key] = value

        if record.exc_info:
            error = record.exc_info[1]
            if isinstance(error, RealtimeError):
                log_obj["error"] = {
                    "type": type(error).__name__,
                    "message": error.message,
                    **error.details,
                }
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
    config: RealtimeConfig | None = None,
) -> logging.Logger:
    """
    Send the realtime logger hierarchy to stdout as JSON.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger,
            pass None for the root logger)
        config: When given, every line is stamped with the backend it talks
            to (``environment`` and ``backend``)

    Returns:
        Configured logger instance
    """
    static_fields: dict[str, Any] = {}
    if config is not None:
        static_fields["environment"] = "staging" if config.developer_mode else "production"
        static_fields["backend"] = config.active_base_url

    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter(static_fields))

    logger.addHandler(handler)
    logger.setLevel(level)

    return logger


class RealtimeLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps live subscription context on every record.

    ``context`` is called at log time, so a session that switches project
    or starts a new connection attempt never logs stale identifiers.
    Explicit ``extra`` passed to a log call wins over the context.
    """

    def __init__(self, logger: logging.Logger, context: Callable[[], Mapping[str, Any]]) -> None:
        super().__init__(logger, {})
        self.context = context

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(self.context())
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs
