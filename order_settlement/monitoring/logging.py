"""
Structured logging for the settlement service.

structlog renders every service event as JSON. Records from libraries that
log through the standard library (uvicorn, SQLAlchemy, httpx) go through
python-json-logger with the same service fields, so one log stream can be
filtered by ``service`` and ``env`` regardless of who wrote the line.

Callback handling binds ``gateway`` and ``transaction_id`` with
``structlog.contextvars``; the request middleware binds ``request_id``.
Every event logged while a notification is reconciled carries them.
"""
import logging
import sys
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from order_settlement.config import Settings, get_settings
from order_settlement.core.errors import SettlementError

# Library loggers kept at WARNING unless SQL echo is on.
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def add_settlement_error(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Flatten a settlement error into ``error_code`` / ``retryable`` fields.

    The error may be passed as ``error=exc`` or be the exception being
    handled when the event was logged with ``exc_info``. Must run before
    ``format_exc_info`` consumes ``exc_info``.
    """
    error = event_dict.get("error")
    if isinstance(error, SettlementError):
        event_dict["error"] = error.message
    else:
        exc_info = event_dict.get("exc_info")
        if exc_info is True:
            exc_info = sys.exc_info()
        if isinstance(exc_info, tuple):
            exc_info = exc_info[1]
        error = exc_info if isinstance(exc_info, SettlementError) else None

    if error is not None:
        event_dict.setdefault("error_code", error.error_code)
        event_dict.setdefault("retryable", error.retryable)
    return event_dict


def build_stdlib_formatter(settings: Settings) -> jsonlogger.JsonFormatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={
            "asctime": "@timestamp",
            "levelname": "level",
            "name": "logger",
            "message": "message",
        },
        static_fields={"service": settings.app_name, "env": settings.app_env},
    )


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root stdlib logger.

    Safe to call more than once: the root logger ends up with exactly one
    JSON handler.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_settlement_error,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(build_stdlib_formatter(settings))
    root_logger.addHandler(json_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
