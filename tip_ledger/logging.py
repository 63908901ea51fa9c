"""
Structured logging setup.

Modules log through ``structlog.get_logger(__name__)`` with key/value
events; this configures where those events go.
"""

import logging
import sys

import structlog


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        log_level: Minimum level name, e.g. "INFO"
        json_output: Render JSON lines; otherwise a human-readable console format
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level.upper(),
        force=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

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
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
