"""
Logging setup

Configures the root logger once and returns a filter that stamps every
record with the id of the HTTP request being served.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Optional, Tuple

from .settings import settings

_request_id: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Adds `request_id` to log records."""

    def set_request_id(self, request_id: Optional[str]):
        _request_id.set(request_id or "-")

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        return True


def setup_logging(level: Optional[str] = None) -> Tuple[logging.Logger, RequestIdFilter]:
    request_id_filter = RequestIdFilter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(settings.LOG_FORMAT))
    handler.addFilter(request_id_filter)

    root = logging.getLogger()
    root.setLevel((level or settings.LOG_LEVEL).upper())
    # Replace handlers so repeated setup (reload, tests) does not duplicate output
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger("pipeline_runner")
    return logger, request_id_filter
