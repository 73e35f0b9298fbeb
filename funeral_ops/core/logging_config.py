import logging
import sys

import structlog

from ..config import settings


def setup_logging():
    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.LOG_JSON
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    log = structlog.get_logger("funeral_ops")
    log.info("logging_initialized", app="funeral_ops", level=settings.LOG_LEVEL)


def bind_request_context(*, tenant_id: str | None = None, actor_id: str | None = None):
    """Attach tenant and actor to every log line emitted in this context."""
    values = {}
    if tenant_id:
        values["tenant_id"] = tenant_id
    if actor_id:
        values["actor_id"] = actor_id
    if values:
        structlog.contextvars.bind_contextvars(**values)


def clear_request_context():
    structlog.contextvars.clear_contextvars()
