"""
Logging configuration for Deal CRM.

Single 'dealcrm' logger used across all modules (module loggers are created
with logging.getLogger(__name__) and propagate up to it).

  Log file : logs/dealcrm.log
  Rotation : 5 MB × 3 backups
  Level    : LOG_LEVEL env var (DEBUG / INFO / WARNING / ERROR / CRITICAL)
             defaults to INFO when unset
  Console  : LOG_CONSOLE=1 also writes to stderr

Usage
-----
    from dealcrm.logging_config import configure_logging, log_call

    configure_logging()

    @log_call
    def create_deal(self, draft):
        ...

Log format per line
-------------------
    2026-02-16 14:32:01 | INFO     | OK   create_deal | 42ms
    2026-02-16 14:32:01 | ERROR    | FAIL update_deal | ConflictError: deal 7 was modified ... | 3ms

Drafts carry customer names, phones and emails, so argument reprs in CALL
lines are cut to _MAX_ARG_REPR characters.
"""

import functools
import logging
import logging.handlers
import os
import time
from pathlib import Path

_LOGGER_NAME = "dealcrm"
_LOG_DIR = Path(__file__).parent.parent / "logs"
_LOG_FILE = _LOG_DIR / "dealcrm.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_BACKUP_COUNT = 3
_MAX_ARG_REPR = 80


def configure_logging() -> logging.Logger:
    """
    Set up the dealcrm logger. Idempotent, safe to call on every CLI entry.
    Returns the configured logger.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    if logger.handlers:
        return logger

    _LOG_DIR.mkdir(exist_ok=True)

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

    file_handler = logging.handlers.RotatingFileHandler(
        _LOG_FILE,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if os.environ.get("LOG_CONSOLE", "").lower() in ("1", "true", "yes"):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    return logger


def _short_repr(value) -> str:
    text = repr(value)
    if len(text) > _MAX_ARG_REPR:
        return text[:_MAX_ARG_REPR - 3] + "..."
    return text


def log_call(func):
    """
    Decorator: logs entry, clean exit, and exceptions for any function.

    - DEBUG on entry   : CALL <name> | args=(...)   (each arg cut to 80 chars)
    - INFO  on success : OK   <name> | <N>ms
    - ERROR on failure : FAIL <name> | ExcType: message | <N>ms   (then re-raises)
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(_LOGGER_NAME)
        name = func.__qualname__
        start = time.perf_counter()

        if logger.isEnabledFor(logging.DEBUG):
            parts = [_short_repr(a) for a in args]
            parts += [f"{k}={_short_repr(v)}" for k, v in kwargs.items()]
            logger.debug(f"CALL {name} | args=({', '.join(parts) or '-'})")

        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"FAIL {name} | {type(exc).__name__}: {exc} | {ms}ms")
            raise
        ms = int((time.perf_counter() - start) * 1000)
        logger.info(f"OK   {name} | {ms}ms")
        return result

    return wrapper
