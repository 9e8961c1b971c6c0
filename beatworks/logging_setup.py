"""
Logging configuration for the worker.

Records carry the production and clip they belong to, taken from contextvars
that the orchestrator sets around each clip task. asyncio copies the context
into every task, so concurrent clips never see each other's ids.
"""

import contextvars
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(production_id)s | clip=%(clip_index)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOG_PRODUCTION_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "log_production_id", default=None
)
LOG_CLIP_INDEX: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar(
    "log_clip_index", default=None
)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.production_id = LOG_PRODUCTION_ID.get() or "-"
        clip_index = LOG_CLIP_INDEX.get()
        record.clip_index = "-" if clip_index is None else clip_index
        return True


@contextmanager
def log_context(
    production_id: Optional[str] = None,
    clip_index: Optional[int] = None,
) -> Iterator[None]:
    tokens = []
    if production_id is not None:
        tokens.append((LOG_PRODUCTION_ID, LOG_PRODUCTION_ID.set(production_id)))
    if clip_index is not None:
        tokens.append((LOG_CLIP_INDEX, LOG_CLIP_INDEX.set(clip_index)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str = "INFO", force: bool = False) -> logging.Logger:
    root = logging.getLogger()
    if getattr(root, "_beatworks_logging_configured", False) and not force:
        return root

    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    # Filter on the handler so records from every logger get the fields
    handler.addFilter(ContextFilter())
    root.addHandler(handler)
    root.setLevel(level.upper())
    logging.captureWarnings(True)
    root._beatworks_logging_configured = True
    return root
