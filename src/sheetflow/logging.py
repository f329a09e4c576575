import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context variable to track the correlation id of the current operation
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

def get_request_id() -> str:
    """Retrieve the current request_id or generate a new one if not set."""
    rid = request_id_ctx.get()
    if rid is None:
        rid = uuid.uuid4().hex[:12]
        request_id_ctx.set(rid)
    return rid

@contextmanager
def request_scope() -> Iterator[str]:
    """Give the enclosed operation a correlation id, reusing one that is already active."""
    rid = request_id_ctx.get()
    if rid is not None:
        yield rid
        return
    rid = uuid.uuid4().hex[:12]
    token = request_id_ctx.set(rid)
    try:
        yield rid
    finally:
        request_id_ctx.reset(token)

class RequestIDFilter(logging.Filter):
    """Injects request_id into log records ("-" outside any request scope)."""
    def filter(self, record):
        record.request_id = request_id_ctx.get() or "-"
        return True

def configure_logging(level: str = "INFO"):
    """Configures the root logger with a standard format including request_id."""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers to avoid duplication
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | [%(request_id)s] | %(name)s:%(funcName)s:%(lineno)d - %(message)s"
    )
    handler.setFormatter(formatter)
    handler.addFilter(RequestIDFilter())

    logger.addHandler(handler)

    # SQL echo is configured on the engine, keep the library logger quiet
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

# Initialize logging on import with configured level
from sheetflow.config import settings  # noqa: E402

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger("sheetflow")
