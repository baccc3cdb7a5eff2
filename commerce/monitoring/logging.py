"""
Structured logging configuration.

Uses structlog for JSON-formatted logs with request IDs bound through
contextvars. Secrets and payment details are masked before rendering.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from commerce.config import Settings, get_settings

# Never written to logs in full (PCI-DSS, credentials)
SENSITIVE_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "payment_method",
        "authorization",
        "access_token",
        "token",
        "stripe_secret_key",
        "jwt_secret_key",
    }
)

EventDict = dict[str, Any]


def scrub_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Mask sensitive values, keeping the last 4 characters of long strings.

    `pm_card_visa_4242` is logged as `***4242` so a payment method can still
    be told apart from another one in a trace.
    """
    for key in SENSITIVE_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 8:
            event_dict[key] = f"***{value[-4:]}"
        else:
            event_dict[key] = "***REDACTED***"
    return event_dict


def app_context_processor(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """Build a processor that stamps every event with the app name and environment."""
    app_name = settings.app_name
    app_env = settings.app_env

    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app_name", app_name)
        event_dict.setdefault("app_env", app_env)
        return event_dict

    return add_app_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs
    - Request/correlation ID tracking via contextvars
    - Masking of passwords, tokens and payment methods
    - ELK/Loki compatible field names
    """
    settings = settings or get_settings()

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
            scrub_sensitive_fields,
            app_context_processor(settings),
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

    # Quiet the HTTP, database and broker clients
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        kafka_enabled=bool(settings.kafka_bootstrap_servers),
    )
