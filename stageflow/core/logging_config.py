"""
Stageflow - Logging
===================

structlog configuration shared by every entry point.
"""

import logging
import sys

import structlog

from stageflow.core.config import Settings, settings as default_settings


def configure_logging(config: Settings | None = None) -> None:
    """Route structlog and stdlib logging through one handler."""
    config = config or default_settings

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=config.LOG_LEVEL.upper(),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if config.is_production or config.LOG_JSON
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
