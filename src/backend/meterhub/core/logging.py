"""Structured logging setup for MeterHub."""

import logging
import sys

import structlog

from meterhub.core.config import settings


def configure_logging(log_level: str | None = None, json_format: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    JSON output is meant for production log shipping, the console renderer
    for local development. Both share the same processor chain so event
    fields look the same either way.
    """
    level_name = (log_level or settings.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    use_json = settings.log_json if json_format is None else json_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
