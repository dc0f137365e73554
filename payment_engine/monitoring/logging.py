"""
Structured logging configuration.

Uses structlog for JSON-formatted logs with request correlation IDs.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payment_engine.config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {"client_secret", "signature", "stripe_signature", "key_secret", "webhook_secret", "authorization"}
)


def add_app_context(app_name: str, app_env: str) -> Callable[..., dict[str, Any]]:
    """
    Build a processor that adds application context to log events.

    Args:
        app_name: Application name stamped on every event
        app_env: Deployment environment stamped on every event

    Returns:
        Callable: structlog processor
    """

    def processor(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = app_name
        event_dict["app_env"] = app_env
        return event_dict

    return processor


def mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Redact gateway secrets and signatures before an event is rendered."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        value = event_dict[key]
        if value:
            event_dict[key] = f"***{str(value)[-4:]}" if len(str(value)) > 12 else "***"
    return event_dict


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging.

    Sets up:
    - JSON-formatted logs, or console output for local debug runs
    - Redaction of gateway secrets and signatures
    - Request ID tracking through contextvars
    - Structured log fields
    """
    settings = settings or get_settings()
    if settings.debug and not settings.is_production:
        renderer: Any = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context(settings.app_name, settings.app_env),
            mask_sensitive_fields,
            renderer,
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
    formatter = jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Gateway SDKs log every HTTP request at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
