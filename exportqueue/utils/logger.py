### exportqueue/utils/logger.py

"""
Structured logging helpers.

Every module obtains its logger with ``get_logger(__name__)`` and logs
key/value context alongside the message:

    logger.info("Export job finished", signature=job.signature, rows=5)
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", log_format: str = "console") -> None:
    """
    Configure stdlib logging and structlog. Called once by each entry point
    (exportqueue.main, exportqueue.worker.app); library modules never call it.

    Args:
        level: Root log level name (DEBUG, INFO, ...)
        log_format: "json" for machine readable output, anything else for console
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
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
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    """
    Return a structlog logger bound to ``name``.

    The logger is lazy: it picks up whatever configuration the entry point
    (API or worker) installs with configure_logging, even if created earlier.
    """
    return structlog.get_logger(name)
