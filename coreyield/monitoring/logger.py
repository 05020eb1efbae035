"""
structlog wiring for coreyield.

Every module logs through `get_logger(__name__)` with keyword context
(kind=, market_id=, pool_id=, tx_hash=, error=). The connected account is
bound once per session with `bind_session_context` and merged into each
line from contextvars, so operation logs never pass it by hand.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

import structlog

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
_LOG_FILE_BACKUPS = 5

# HTTP client chatter from the RPC transport
_NOISY_LOGGERS = ("aiohttp", "asyncio")


def _level(log_level: str) -> int:
    name = log_level.upper()
    if name not in _LEVELS:
        raise ValueError(f"Unknown log level {log_level!r}, expected one of {', '.join(_LEVELS)}")
    return getattr(logging, name)


def _processors(log_format: str) -> List:
    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def _rotating_file(log_file: str, level: int) -> RotatingFileHandler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=_LOG_FILE_MAX_BYTES, backupCount=_LOG_FILE_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: Optional[str] = None) -> None:
    """
    Route structlog through stdlib logging to stdout (and optionally a file).

    Safe to call more than once: root handlers are replaced, not stacked.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL (case-insensitive)
        log_format: "json" for machine-readable lines, anything else for console
        log_file: Optional path; rotated at 10MB, 5 backups kept
    """
    level = _level(log_level)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(_rotating_file(log_file, level))
    logging.basicConfig(format="%(message)s", level=level, handlers=handlers, force=True)

    quiet = logging.DEBUG if level == logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)

    structlog.configure(
        processors=_processors(log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    get_logger(__name__).debug(
        "Logging configured", log_level=logging.getLevelName(level), log_format=log_format, log_file=log_file
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def bind_session_context(account: str, chain_id: Optional[int] = None) -> None:
    """Attach the connected account (and chain) to every log line in this context."""
    if chain_id is None:
        structlog.contextvars.bind_contextvars(account=account)
    else:
        structlog.contextvars.bind_contextvars(account=account, chain_id=chain_id)


def clear_session_context() -> None:
    """Drop session fields bound by bind_session_context."""
    structlog.contextvars.unbind_contextvars("account", "chain_id")
