"""
Logging setup for the API and the Celery worker.

Every line carries the billing context it was emitted under (webhook event,
subscription, periodic job) so one delivery or one renewal can be followed
across services:

    2024-01-15 12:00:00 | INFO     | subhook.services.subscription_state | event_id=evt-1 | ...

Bind context with ``log_context``; nested blocks add to the outer fields.
File output (rotating) is enabled in DEBUG or when ``LOG_FILE`` is set.
"""
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from subhook.core.config import settings

DEFAULT_LOG_FILE = Path(__file__).resolve().parent.parent.parent / "logs" / "subhook.log"
MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 3
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(billing_context)s | %(message)s"
FILE_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(billing_context)s | %(message)s"
)

# Bibliotecas que logam demais em INFO
QUIET_LOGGERS = ("httpcore", "httpx", "asyncio", "aiosqlite", "sqlalchemy.engine", "celery.redirected")

_context: ContextVar[dict[str, str]] = ContextVar("subhook_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Attach ``fields`` to every record logged inside the block.

    Example:
        with log_context(event_id=envelope.event_id):
            await router.dispatch(envelope)
    """
    merged = {**_context.get(), **{key: str(value) for key, value in fields.items()}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def current_log_context() -> dict[str, str]:
    return dict(_context.get())


class BillingContextFilter(logging.Filter):
    """Renders the bound context as ``key=value`` pairs, ``-`` when empty."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _context.get()
        record.billing_context = " ".join(f"{key}={value}" for key, value in fields.items()) or "-"
        return True


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(BillingContextFilter())
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(BillingContextFilter())
    return handler


def setup_logging(
    level_name: Optional[str] = None,
    *,
    debug: Optional[bool] = None,
    log_file: Optional[str] = None,
) -> None:
    """Configure the root logger once; later calls only adjust the level."""
    level = getattr(logging, (level_name or settings.LOG_LEVEL).upper(), logging.INFO)
    debug = settings.DEBUG if debug is None else debug
    log_file = settings.LOG_FILE if log_file is None else log_file

    root = logging.getLogger()
    root.setLevel(level)
    # Reload do uvicorn / re-init do worker: handlers ja instalados
    if root.handlers:
        return

    root.addHandler(_console_handler(level))
    if debug or log_file:
        path = Path(log_file) if log_file else DEFAULT_LOG_FILE
        try:
            root.addHandler(_file_handler(path))
        except OSError as exc:
            root.warning("File logging disabled: cannot write to %s (%s)", path, exc)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
