"""
TraceKeeper — Logging Configuration
===================================

What:  Logging setup for applications embedding the middleware, plus a
       filter that stamps every record with the current request's trace id.
Why:   Log lines from one request can then be matched with its transaction
       in the collector.
How:   TraceContextFilter reads the RequestScope of the running task (set by
       isolate()), so it needs no arguments from the call site.

Format: %(asctime)s [%(levelname)s] %(name)s [%(trace_id)s]: %(message)s
"""

import logging
import sys
from typing import Optional

from tracekeeper.config import settings
from tracekeeper.services.scope import get_current_scope

NO_TRACE = "-"


class TraceContextFilter(logging.Filter):
    """Adds `trace_id` and `span_id` attributes to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        scope = get_current_scope()
        transaction = scope.transaction if scope is not None else None
        record.trace_id = transaction.trace_id if transaction is not None else NO_TRACE
        record.span_id = transaction.span_id if transaction is not None else NO_TRACE
        return True


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging to stdout with trace correlation.

    Call once at process start, before serving requests.
    """
    log_format = "%(asctime)s [%(levelname)s] %(name)s [%(trace_id)s]: %(message)s"

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TraceContextFilter())

    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # The OTLP exporter logs every export attempt at DEBUG/INFO
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
