"""
Structured logging setup using structlog.

Every module logs through ``get_logger(__name__)`` and emits snake_case
event names with key/value context:

    logger.info("job_claimed", job_id=42, job_type="extract")

The processor chain is shared between structlog loggers and the standard
library, so Celery, uvicorn, httpx and SQLAlchemy output is rendered the
same way. ``LOG_FORMAT=json`` (or production) renders JSON lines, otherwise
a console renderer is used for local development.
"""

import logging
import sys

import structlog

from studyflow.core.config import settings


def setup_logging(log_level: str | None = None, json_output: bool | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Override for settings.LOG_LEVEL
        json_output: Force JSON (True) or console (False) rendering.
                     Defaults to LOG_FORMAT / APP_ENV.
    """
    level = (log_level or settings.LOG_LEVEL).upper()
    if json_output is None:
        json_output = settings.LOG_FORMAT == "json" or settings.is_production

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # SQL echo is controlled by DB_ECHO, not the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a named structlog logger.

    Configures logging with defaults the first time it is called so
    modules imported outside the app/worker entry points still log.
    """
    if not structlog.is_configured():
        setup_logging()

    return structlog.get_logger(logger_name=name)
