import logging
import sys

import structlog

# Libraries that only log below WARNING in verbose mode.
NOISY_LOGGERS = ("playwright", "asyncio")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]


def setup_logging(verbose: bool, json_output: bool = False):
    """
    Routes structlog events and stdlib records through a single stderr handler.

    Args:
        verbose: DEBUG instead of INFO, and lets the noisy libraries through.
        json_output: One JSON object per line instead of the console renderer,
                     for CI runs whose logs are collected.
    """
    level = logging.DEBUG if verbose else logging.INFO
    shared = _shared_processors()
    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(foreign_pre_chain=shared, processor=renderer)
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if verbose else logging.WARNING)
