"""
Structured logging configuration.

structlog renders every event as one JSON object through the stdlib root
logger. Settlement handling binds ``provider``, ``external_id`` and
``correlation_id`` into contextvars so ledger and store logs emitted while an
event is applied carry the same keys.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TextIO

import structlog
from pythonjsonlogger import jsonlogger

from gridplay.config import Settings, get_settings

NOISY_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "stripe": logging.INFO,
}


def app_context(settings: Settings) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    """Processor stamping the app name and environment on every event."""

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_app_context


def setup_logging(
    settings: Optional[Settings] = None, stream: Optional[TextIO] = None
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        settings: Application settings (uses config if not provided)
        stream: Output stream for the JSON handler (stdout by default)
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            app_context(settings),
            structlog.processors.JSONRenderer(default=str),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=not settings.debug,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )


@contextmanager
def settlement_context(
    provider: str, external_id: str, correlation_id: str
) -> Iterator[None]:
    """Bind settlement identifiers for every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(
        provider=provider, external_id=external_id, correlation_id=correlation_id
    ):
        yield
