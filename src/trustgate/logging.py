"""Logging configuration for Trustgate.

Console output is rendered for humans in development and as JSON otherwise.
The optional rotating file is always JSON so security events stay machine
readable. Fields that could carry raw content or secrets are replaced before
any renderer sees them.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from trustgate.config import Settings, get_settings

HANDLER_PREFIX = "trustgate."
REDACTED = "[REDACTED]"

# Event keys whose values are never written to a log
SENSITIVE_FIELDS = frozenset(
    {
        "content",
        "message_content",
        "raw_content",
        "value",
        "secret",
        "token",
        "password",
        "passphrase",
        "private_key",
        "api_key",
    }
)

_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "openai")


def scrub_sensitive_fields(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]  # noqa: ANN401
) -> MutableMapping[str, Any]:
    """Replace values of :data:`SENSITIVE_FIELDS` keys with a marker."""
    for key in SENSITIVE_FIELDS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _remove_installed_handlers() -> None:
    for handler in list(logging.root.handlers):
        if (handler.get_name() or "").startswith(HANDLER_PREFIX):
            logging.root.removeHandler(handler)
            handler.close()


def _file_handler(settings: Settings, log_level: int) -> RotatingFileHandler | None:
    try:
        Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=settings.log_file_path,
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        # Continue with console-only logging
        print(f"Warning: Could not set up file logging: {e}", file=sys.stderr)
        return None
    handler.set_name(f"{HANDLER_PREFIX}file")
    handler.setLevel(log_level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ]
        )
    )
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the root logger from *settings*.

    Safe to call more than once: handlers installed by an earlier call are
    replaced, handlers added by the host application are left alone.

    Args:
        settings: Defaults to :func:`get_settings`.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    _remove_installed_handlers()
    logging.root.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.set_name(f"{HANDLER_PREFIX}console")
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                (
                    structlog.dev.ConsoleRenderer(colors=True)  # type: ignore[list-item]
                    if settings.is_development
                    else structlog.processors.JSONRenderer()
                ),
            ]
        )
    )
    logging.root.addHandler(console_handler)

    if settings.log_to_file:
        file_handler = _file_handler(settings, log_level)
        if file_handler is not None:
            logging.root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            scrub_sensitive_fields,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
