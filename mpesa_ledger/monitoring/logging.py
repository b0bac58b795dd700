"""
Structured logging configuration.

structlog builds the event (context vars, app context, exception text) and
hands it to stdlib logging as ``extra`` fields; python-json-logger renders
each record as a single JSON object. Records from third-party stdlib loggers
(uvicorn, sqlalchemy) go through the same formatter, so every line on stdout
has the same shape::

    {"timestamp": "...", "level": "INFO", "logger": "...", "event": "stk_push_sent", ...}
"""
import logging
import sys
from typing import Any, Optional, TextIO

import structlog
from pythonjsonlogger.json import JsonFormatter

from mpesa_ledger.config import get_settings

RENAMED_FIELDS = {
    "levelname": "level",
    "name": "logger",
    "message": "event",
}


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp every event with the service name and environments."""
    settings = get_settings()
    event_dict.setdefault("app_name", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)
    event_dict.setdefault("mpesa_environment", settings.mpesa_environment)
    return event_dict


def build_formatter() -> JsonFormatter:
    return JsonFormatter(
        "%(levelname)s %(name)s %(message)s",
        rename_fields=RENAMED_FIELDS,
        timestamp=True,
    )


def setup_logging(stream: Optional[TextIO] = None) -> None:
    """
    Configure structlog and the root stdlib logger.

    Args:
        stream: Output stream, stdout unless given
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(build_formatter())

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.log_level))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
