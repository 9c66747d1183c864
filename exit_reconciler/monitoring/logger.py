"""
Structured logging for the exit reconciler.

structlog on top of stdlib logging: JSON (or console) lines to stdout and,
optionally, a rotating file. Credentials never reach the output.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

_SENSITIVE_KEY_FRAGMENTS = ("api_key", "apikey", "secret", "token", "password", "signature")
_REDACTED = "***REDACTED***"

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ("ccxt", "ccxt.base.exchange", "sqlalchemy.engine", "urllib3", "asyncio")


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {
            k: _REDACTED if any(f in str(k).lower() for f in _SENSITIVE_KEY_FRAGMENTS) else _redact(v)
            for k, v in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return [_redact(v) for v in obj]
    return obj


def redact_credentials(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """structlog processor: mask credential-looking fields (e.g. exchange api keys)."""
    return _redact(event_dict)


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structured logging. Safe to call more than once.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" or "text"
        log_file: Optional path; rotated at 10MB with 5 backups
    """
    level = getattr(logging, log_level.upper())

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5))
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(message)s"))

    logging.basicConfig(level=level, handlers=handlers, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    get_logger(__name__).info(
        "Logging initialized",
        log_level=log_level.upper(),
        log_format=log_format,
        log_file=str(log_file) if log_file else None,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Structured logger for ``name`` (typically __name__)."""
    return structlog.get_logger(name)
