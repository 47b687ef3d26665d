"""structlog setup for kai.

KAI_LOG_LEVEL (or LOG_LEVEL) picks the level and KAI_LOG_FORMAT=json swaps
the console renderer for JSON lines. docker-py, requests and httpx log via
stdlib logging and are folded onto the same stream.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

LIBRARY_LOGGERS = ("docker", "urllib3", "httpx", "httpcore")


def parse_level(name: str | None) -> int:
    level = logging.getLevelName((name or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def quiet_library_loggers(level: int) -> None:
    """Library chatter only shows up at WARNING or when kai itself is more verbose."""
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def setup_logging() -> structlog.stdlib.BoundLogger:
    level = parse_level(os.environ.get("KAI_LOG_LEVEL") or os.environ.get("LOG_LEVEL"))
    as_json = os.environ.get("KAI_LOG_FORMAT", "").lower() == "json"

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if as_json:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, stream=sys.stderr, format="%(name)s: %(message)s")
    quiet_library_loggers(level)

    return structlog.get_logger()


logger: structlog.stdlib.BoundLogger = setup_logging()


def _log_uncaught(exc_type, exc_value, exc_traceback):  # type: ignore[no-untyped-def]
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception in kai", exc_info=(exc_type, exc_value, exc_traceback))


sys.excepthook = _log_uncaught
