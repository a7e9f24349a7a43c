"""structlog setup for PayGuard.

Both structlog loggers and plain stdlib loggers (uvicorn, SQLAlchemy, the
stripe SDK) end up in one ProcessorFormatter, so a single stdout stream holds
every line as JSON in production or colored console output in development.
The request id set by asgi-correlation-id and any billing identifiers bound
with ``bind_payment_context`` are attached to each entry.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "payguard"

# Libraries that are chatty at INFO.
QUIET_LOGGERS = {
    "uvicorn.access": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "stripe": "WARNING",
    "aiosqlite": "WARNING",
}


def add_correlation_id(logger, method, event_dict):
    """Copy the X-Request-ID of the current request onto the entry."""
    request_id = correlation_id.get(None)
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def add_service(logger, method, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _pre_chain() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_service,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _logging_dict(level: str, renderer, pre_chain: list) -> dict:
    loggers = {name: {"level": quiet} for name, quiet in QUIET_LOGGERS.items()}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "payguard": {
                "()": structlog.stdlib.ProcessorFormatter,
                "foreign_pre_chain": pre_chain,
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
                "formatter": "payguard",
            },
        },
        "root": {"level": level, "handlers": ["stdout"]},
        "loggers": loggers,
    }


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Route structlog and stdlib logging through one formatter.

    Must run before the first ``structlog.get_logger()`` call is used, since
    loggers are cached on first use.

    Args:
        log_level: root level name, e.g. "INFO" or "DEBUG"
        json_logs: JSON lines when True, ConsoleRenderer when False
    """
    pre_chain = _pre_chain()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig(_logging_dict(log_level.upper(), renderer, pre_chain))

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def bind_payment_context(**context) -> dict:
    """Bind billing identifiers (record_id, owner_id, event_id) to the current task.

    None values are skipped. Returns the tokens for ``unbind_payment_context``.
    """
    values = {key: str(value) for key, value in context.items() if value is not None}
    return structlog.contextvars.bind_contextvars(**values)


def unbind_payment_context(tokens: dict) -> None:
    structlog.contextvars.reset_contextvars(**tokens)
