"""
Structured logging setup for the copy trading system.

structlog on top of stdlib logging: JSON (or console) lines on stdout,
mirrored into a rotating file. Any event field that looks like a credential
is masked before rendering.
"""
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

DEFAULT_LOG_FILE = "logs/copytrader.log"

_SECRET_FIELDS = frozenset({"api_key", "api_secret", "secret", "credentials", "encryption_key"})


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Show the first `visible` characters of a secret, mask the rest."""
    if not value:
        return ""
    return value[:visible] + "***"


def _mask_secret_fields(logger, method_name, event_dict):
    for key in _SECRET_FIELDS.intersection(event_dict):
        event_dict[key] = mask_secret(str(event_dict[key]))
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
        log_format: Format (json or text)
        log_file: Optional log file path. Defaults to COPYTRADER_LOG_FILE or
            logs/copytrader.log. Pass "" to disable the file mirror.
    """
    if log_file is None:
        log_file = os.getenv("COPYTRADER_LOG_FILE", DEFAULT_LOG_FILE)

    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        _mask_secret_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # 10MB per file, 5 backups
        file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(file_handler)

        get_logger(__name__).info(
            "Logging initialized", log_file=str(log_file), log_level=log_level, log_format=log_format
        )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance (name is typically __name__)."""
    return structlog.get_logger(name)
