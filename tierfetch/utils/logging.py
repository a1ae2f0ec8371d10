"""
Structured logging configuration for tierfetch.

Events are structlog key-value records. The stderr handler renders them as
JSON or for the console (general.json_logs); the optional daily log file is
always JSON so it stays machine-readable.

Fetch events routinely carry whole pages. Body-like fields are replaced by
their size and URL fields are shortened before rendering.
"""

import logging
import sys
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from tierfetch.utils.config import get_project_root, get_settings

MAX_URL_CHARS = 200

_URL_FIELDS = ("url", "final_url", "endpoint", "redirect")
_BODY_FIELDS = ("html", "body", "content", "text")

# Marks handlers installed here so reconfiguring replaces only our own
_HANDLER_TAG = "_tierfetch_handler"


def _shrink_payloads(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace page bodies with their size and cut long URLs."""
    for key in _BODY_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str | bytes):
            event_dict[key] = f"<{len(value)} chars>"
    for key in _URL_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > MAX_URL_CHARS:
            event_dict[key] = value[:MAX_URL_CHARS] + "..."
    return event_dict


def _default_log_file() -> Path:
    log_dir = get_project_root() / get_settings().general.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"tierfetch_{datetime.now().strftime('%Y%m%d')}.log"


def _handler(stream_or_path: Any, renderer: Processor, shared: list[Processor]) -> logging.Handler:
    if isinstance(stream_or_path, Path):
        handler: logging.Handler = logging.FileHandler(stream_or_path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream_or_path)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    setattr(handler, _HANDLER_TAG, True)
    return handler


def configure_logging(
    log_level: str | None = None,
    log_file: str | Path | None = None,
    json_format: bool | None = None,
) -> None:
    """Configure structured logging.

    Safe to call again: handlers from a previous call are replaced.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Uses settings if None.
        log_file: Path to log file. Uses settings if None; no file when
            general.log_to_file is false.
        json_format: JSON (True) or console (False) rendering on stderr.
            Uses settings if None.
    """
    general = get_settings().general
    level = getattr(logging, (log_level or general.log_level).upper(), logging.INFO)
    if json_format is None:
        json_format = general.json_logs
    if log_file is None and general.log_to_file:
        log_file = _default_log_file()

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _shrink_payloads,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    json_renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    stderr_renderer: Processor = (
        json_renderer
        if json_format
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    handlers = [_handler(sys.stderr, stderr_renderer, shared)]
    if log_file is not None:
        handlers.append(_handler(Path(log_file), json_renderer, shared))

    root = logging.getLogger()
    for old in [h for h in root.handlers if getattr(h, _HANDLER_TAG, False)]:
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=shared
        + [
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Logger name (usually __name__).

    Returns:
        Configured logger instance.
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables to all subsequent log calls in this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


class LogContext:
    """Scoped logging context.

    Nested contexts restore the outer values on exit, so a per-tier context
    inside a per-fetch context does not drop the fetch's url.

    Example:
        with LogContext(url=url, intent="source"):
            logger.info("Fetching")
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self._tokens: Mapping[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


_logging_configured = False


def ensure_logging_configured() -> None:
    """Configure logging from settings unless it already was."""
    global _logging_configured
    if not _logging_configured:
        configure_logging()
        _logging_configured = True
