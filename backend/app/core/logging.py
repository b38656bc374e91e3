"""
Structured logging configuration using structlog.
Outputs JSON in production, pretty-printed in development.

Payment logs end up in shared sinks, so every record passes through
`_redact_sensitive` first: MSISDNs are masked and credentials dropped,
including inside gateway response bodies logged as `body=`.
In production each record also carries the service name and environment.
"""

import logging
import sys
import structlog
from app.core.config import get_settings
from app.core.phone import mask_phone_number

PHONE_KEYS = {"phone", "phone_number", "PhoneNumber", "PartyA", "msisdn"}
SECRET_KEYS = {"Password", "access_token", "passkey", "consumer_secret", "Authorization"}


def _redact(value):
    if isinstance(value, dict):
        return {k: _redact_field(k, v) for k, v in value.items()}
    return value


def _redact_field(key, value):
    if key in SECRET_KEYS:
        return "[redacted]"
    if key in PHONE_KEYS and value is not None:
        text = str(value)
        return text if "*" in text else mask_phone_number(text)
    return _redact(value)


def _redact_sensitive(logger, method_name, event_dict):
    for key in list(event_dict):
        if key != "event":
            event_dict[key] = _redact_field(key, event_dict[key])
    return event_dict


def _add_app_context(logger, method_name, event_dict):
    settings = get_settings()
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def setup_logging() -> None:
    settings = get_settings()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        _redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.ENVIRONMENT == "production":
        shared_processors.append(_add_app_context)
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ]
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # httpx logs every gateway call, token request included, at INFO
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
