"""structlog setup for the API, the sweeper, and scripts.

All output goes through one stdlib handler, so uvicorn, SQLAlchemy and the
stripe client render the same way as our own events: JSON lines in
production, ConsoleRenderer when debugging. Every entry gets the request's
correlation id when one is bound.

Redemption tokens, client secrets and webhook signatures are credentials.
They are masked before rendering, whichever logger emitted them.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

# Event keys whose values are never written out
SECRET_KEYS = frozenset({
    "token",
    "qr_code_token",
    "client_secret",
    "ephemeral_key",
    "signature",
    "authorization",
})

REDACTED = "[redacted]"

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "stripe", "botocore")


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from asgi-correlation-id context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_secrets(logger, method, event_dict):
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def shared_processors() -> list:
    """Processors applied to both structlog and foreign (stdlib) records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Route structlog and stdlib logging through a single renderer.

    Must run before other pourline modules create their loggers, since the
    processor chain is cached on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: JSON lines when True, ConsoleRenderer otherwise
    """
    processors = shared_processors()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "pourline": {
                "()": structlog.stdlib.ProcessorFormatter,
                "foreign_pre_chain": processors,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "pourline",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    })

    structlog.configure(
        processors=processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
