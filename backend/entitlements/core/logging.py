"""Structured logging configuration with a stdlib bridge.

Configures structlog with:
- JSON output for production (one event per line for the log aggregator)
- ConsoleRenderer for dev mode (human-readable, colored)
- Stdlib bridge so SQLAlchemy, uvicorn and FastAPI logs share the same format
- Correlation ID injection from asgi-correlation-id context var
- Per-operation context (operation name, user id) bound around service calls
"""

import functools
import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from asgi-correlation-id context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and route stdlib logging through the same processors.

    Must run before any module calls ``structlog.get_logger`` and logs,
    since the processor chain is cached on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: True for JSON output (production), False for ConsoleRenderer (dev)
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_operation_context(func):
    """Bind ``operation`` and ``user_id`` to every log event emitted inside ``func``.

    Wraps async methods whose first argument is a user id or an object
    carrying one (for example a PaymentOutcome). Explicit event keys
    still take precedence over the bound values.
    """

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        subject = args[0] if args else kwargs.get("user_id", kwargs.get("outcome"))
        user_id = subject if isinstance(subject, str) else getattr(subject, "user_id", None)

        context = {"operation": func.__name__}
        if user_id is not None:
            context["user_id"] = user_id
        with structlog.contextvars.bound_contextvars(**context):
            return await func(self, *args, **kwargs)

    return wrapper
