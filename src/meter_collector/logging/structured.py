"""structlog configuration for the collector process.

Every record, whether from a structlog logger or a plain
``logging.getLogger(__name__)`` one, carries the ISO timestamp, level,
logger name and whatever the collection cycle bound through
``meter_collector.logging.context`` (``cycle_id`` while a cycle runs).
"""

from __future__ import annotations

import logging
import sys

import structlog

SERVICE_NAME = "meter-collector"

# Per-request chatter from the transport and HTTP libraries
_QUIET_LOGGERS = ("uvicorn.access", "aiosqlite", "pymodbus", "httpx", "httpcore")


def _add_service(
    logger: object, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(level: str = "INFO", fmt: str = "json", log_file: str = "") -> None:
    """Route all collector logging through one structlog chain.

    Args:
        level: Log level name. Unknown names fall back to INFO.
        fmt: "json" for one object per line, "console" for a coloured dev view.
        log_file: Also append to this file when set.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "console":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=True)
        final_processors: list[structlog.types.Processor] = [renderer]
    else:
        # tracebacks from logger.exception() become an "exception" string field
        final_processors = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *final_processors,
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
