"""Logging setup shared by the ratewatch modules.

Every module asks :func:`get_logger` for its logger. Records go to stderr and to
a size-rotated file under ``RATEWATCH_LOG_DIR``. Owner passwords and Fernet
tokens are masked before any handler formats a record, so a stray ``%r`` of a
credential payload never lands on disk.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler

LOG_DIR = os.getenv("RATEWATCH_LOG_DIR", "logs")
LOG_FILE = os.path.join(LOG_DIR, os.getenv("RATEWATCH_LOG_FILE", "app.log"))
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
MASK = "[REDACTED]"

_FERNET_TOKEN = re.compile(r"gAAAAA[0-9A-Za-z_\-=]{20,}")
_SECRET_PAIR = re.compile(
    r"(?P<key>\b(?:password|passwd|secret|token|api_key|key)\b['\"]?\s*[=:]\s*)(?P<quote>['\"]?)[^\s'\",;}]+",
    re.IGNORECASE,
)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def resolve_level(value: str | None) -> int:
    """Map a level name such as ``debug`` to its numeric value, falling back to INFO."""

    if not value:
        return logging.INFO
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else logging.INFO


DEFAULT_LEVEL = resolve_level(os.getenv("LOG_LEVEL"))
MAX_BYTES = _int_env("RATEWATCH_LOG_MAX_BYTES", 1_000_000)
BACKUP_COUNT = _int_env("RATEWATCH_LOG_BACKUPS", 3)


def mask_secrets(text: str) -> str:
    """Blank out Fernet tokens and ``password=...`` style pairs in ``text``."""

    text = _FERNET_TOKEN.sub(MASK, text)
    return _SECRET_PAIR.sub(lambda m: f"{m.group('key')}{m.group('quote')}{MASK}", text)


class SecretFilter(logging.Filter):
    """Rewrite each record's message with secrets masked. Never drops a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger with console and rotating file handlers."""
    os.makedirs(LOG_DIR, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(DEFAULT_LEVEL)
    logger.propagate = False

    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT)
        secret_filter = SecretFilter()

        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        console_handler = logging.StreamHandler()

        for handler in (file_handler, console_handler):
            handler.setFormatter(formatter)
            handler.setLevel(DEFAULT_LEVEL)
            handler.addFilter(secret_filter)
            logger.addHandler(handler)

    return logger
