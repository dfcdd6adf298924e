"""structlog over stdlib logging, rendered as JSON lines.

Both structlog events and plain stdlib records (SQLAlchemy, aiosqlite) go
through the same ``ProcessorFormatter`` so every line in the console and in
the rotating log file is one JSON object.
"""

import logging
import os
from logging.handlers import RotatingFileHandler

import structlog
from sqlalchemy.engine import make_url
from structlog.contextvars import merge_contextvars

from Cellmatrix.config import Settings, load_settings

# Third-party loggers re-routed through the root handlers
_ROUTED_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


def _level(name: str | None, default: int) -> int | None:
    """Map a level name to a logging level; ``NONE`` disables the handler."""
    if not name or name.upper() == "NONE":
        return None
    return getattr(logging, name.upper(), default)


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            # Run-local context bound by the importer (profile stable id)
            merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=[structlog.processors.add_log_level, merge_contextvars],
    )


def _build_handlers(settings: Settings, default: int) -> list[logging.Handler]:
    if not settings.logging_enabled:
        return []
    handlers: list[logging.Handler] = []
    console_level = _level(settings.logging_console, default)
    if console_level is not None:
        console = logging.StreamHandler()
        console.setLevel(console_level)
        handlers.append(console)
    file_level = _level(settings.logging_file, default)
    if file_level is not None:
        path = settings.logging_file_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        rotating = RotatingFileHandler(
            path,
            maxBytes=settings.logging_max_bytes,
            backupCount=settings.logging_backup_count,
        )
        rotating.setLevel(file_level)
        handlers.append(rotating)
    formatter = _json_formatter()
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(settings: Settings | None = None) -> None:
    """Install JSON handlers on the root logger and point structlog at stdlib.

    Console and file handlers carry their own levels; a level of ``NONE``
    turns one off and ``logging_enabled = false`` turns both off.
    """
    settings = settings or load_settings()
    level = getattr(logging, settings.logging_level.upper(), logging.INFO)

    logging.captureWarnings(True)
    # force=True to replace any prior configuration
    logging.basicConfig(level=level, handlers=_build_handlers(settings, level), force=True)
    for name in _ROUTED_LOGGERS:
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # Hand off to ProcessorFormatter on handlers
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def redact_settings(settings: Settings) -> dict:
    """Settings as a dict with any database password replaced by ``[REDACTED]``."""
    data = settings.model_dump()
    url = make_url(settings.database_url)
    if url.password:
        data["database_url"] = url.set(password="[REDACTED]").render_as_string(
            hide_password=False
        )
    return data
