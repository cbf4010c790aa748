"""
Call-id aware logging.

Every log line emitted while handling a request carries the caller-visible
call id, so one caller's path through triage, availability and assignment can
be followed in the logs:

    set_call_id("call_8f2c")
    logger = get_call_logger(__name__)
    logger.info("Assigning technician")  # -> ... [call_8f2c] Assigning technician
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Optional

from . import config

_call_id: ContextVar[str] = ContextVar("call_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(call_id)s] %(message)s"


def set_call_id(call_id: Optional[str] = None) -> str:
    """Bind a call id to the current context, generating one if missing."""
    value = call_id or f"call_{uuid.uuid4().hex[:12]}"
    _call_id.set(value)
    return value


def get_call_id() -> str:
    return _call_id.get()


class CallIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.call_id = _call_id.get()
        return True


def get_call_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(f, CallIdFilter) for f in logger.filters):
        logger.addFilter(CallIdFilter())
    return logger


def configure_logging(level: Optional[str] = None) -> None:
    """Install a root handler that prints the call id on every record."""
    root = logging.getLogger()
    if any(getattr(h, "_dispatchline", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.addFilter(CallIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._dispatchline = True
    root.addHandler(handler)
    root.setLevel(level or config.LOG_LEVEL)
