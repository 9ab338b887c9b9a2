"""Logging configuration for the service."""

from __future__ import annotations

import contextvars
import logging

from quotasync.config import settings

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id",
    default=None,
)
sync_run_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "sync_run",
    default=None,
)


class ContextFilter(logging.Filter):
    """Attach request_id and sync_run from contextvars to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = getattr(record, "request_id", None) or request_id_var.get() or "-"
        record.sync_run = getattr(record, "sync_run", None) or sync_run_var.get() or "-"
        return True


def configure_logging() -> None:
    """Configure structured logging for the service."""
    factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = factory(*args, **kwargs)
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get() or "-"
        if not hasattr(record, "sync_run"):
            record.sync_run = sync_run_var.get() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=(
            "%(asctime)s %(levelname)s %(name)s %(message)s "
            "request_id=%(request_id)s sync_run=%(sync_run)s"
        ),
    )
    root_logger = logging.getLogger()
    root_logger.addFilter(ContextFilter())
    for handler in root_logger.handlers:
        handler.addFilter(ContextFilter())
