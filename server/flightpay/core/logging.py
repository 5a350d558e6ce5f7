import logging
import sys
from typing import Any

import structlog

NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "stripe")


def configure_logging(level: int = logging.INFO, *, json_logs: bool = True) -> None:
    """
    Route structlog through stdlib logging.

    Events are named ``payment.<area>.<what>`` and carry the payment reference where
    there is one; development runs can switch to the console renderer.
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def bind_payment_context(**values: Any) -> None:
    structlog.contextvars.bind_contextvars(**values)


def clear_payment_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(*args: Any, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(*args, **kwargs)
