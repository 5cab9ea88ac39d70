"""
TraceKeeper — OpenTelemetry Backend Implementation
==================================================

What:  Concrete TelemetryBackend built on the OpenTelemetry SDK.
Why:   OpenTelemetry already owns sampling (ParentBased ratio sampler),
       buffering (BatchSpanProcessor) and transport (OTLP exporter); this
       module maps our Transaction lifecycle onto SDK spans.
How:   Each Transaction is backed by one SERVER span. Finishing the
       Transaction ends the span; capture_exception() records an exception
       event on the request's span; flush() calls the provider's blocking
       force_flush() in a worker thread.

Export Pipeline:
    Transaction.finish() → span.end() → BatchSpanProcessor queue
        → flush() → force_flush(timeout) → OTLPSpanExporter → collector
"""

import asyncio
import logging
import uuid
from functools import partial
from typing import Any, Dict, Optional

from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import (
    NonRecordingSpan,
    Span,
    SpanKind,
    Status,
    StatusCode,
    set_span_in_context,
)

from tracekeeper import __version__
from tracekeeper.config import Settings, settings
from tracekeeper.exceptions import ConfigurationError, TelemetryBackendError
from tracekeeper.models.transaction import Transaction
from tracekeeper.schemas.traceparent import TraceparentToken
from tracekeeper.services.error_capture import CapturedError
from tracekeeper.services.scope import RequestScope
from tracekeeper.services.telemetry_base import TelemetryBackend

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "tracekeeper"


def build_tracer_provider(config: Settings) -> TracerProvider:
    """
    Create a TracerProvider from settings.

    Raises:
        ConfigurationError: exporter is "otlp" but no endpoint is configured.
    """
    provider = TracerProvider(
        resource=Resource.create({"service.name": config.service_name}),
        sampler=ParentBased(TraceIdRatioBased(config.traces_sample_rate)),
    )

    if config.exporter == "otlp":
        if not config.otlp_endpoint:
            raise ConfigurationError(
                "TRACEKEEPER_OTLP_ENDPOINT must be set when TRACEKEEPER_EXPORTER=otlp",
                setting="otlp_endpoint",
            )
        exporter = OTLPSpanExporter(endpoint=config.otlp_endpoint, timeout=config.flush_timeout)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info("Exporting spans via OTLP to %s", config.otlp_endpoint)
    elif config.exporter == "console":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("Exporting spans to the console")
    else:
        logger.info("No span exporter configured; transactions will not leave the process")

    return provider


def _flatten(prefix: str, value: Any, into: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a nested event dict into dotted OpenTelemetry attribute keys."""
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten(f"{prefix}.{key}" if prefix else str(key), item, into)
    elif isinstance(value, (str, bool, int, float)):
        into[prefix] = value
    elif value is not None:
        into[prefix] = str(value)
    return into


class OtelTelemetryBackend(TelemetryBackend):
    """
    TelemetryBackend backed by an OpenTelemetry TracerProvider.

    Open spans are tracked by span id until their Transaction finishes, so
    that errors captured mid-request land on the right span.
    """

    def __init__(
        self,
        tracer_provider: Optional[TracerProvider] = None,
        config: Optional[Settings] = None,
    ):
        self._config = config or settings
        self._provider = tracer_provider or build_tracer_provider(self._config)
        self._tracer = self._provider.get_tracer(INSTRUMENTATION_NAME, __version__)
        self._open_spans: Dict[str, Span] = {}

    # ── Transactions ──────────────────────────────────────────────────────

    def start_transaction(
        self,
        name: str,
        op: str,
        parent: Optional[TraceparentToken] = None,
        sampling_context: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        attributes: Dict[str, Any] = {"tracekeeper.op": op}
        request = (sampling_context or {}).get("request")
        if request is not None:
            attributes["http.request.method"] = request.method
            attributes["url.path"] = request.url

        try:
            span = self._tracer.start_span(
                name,
                context=self._parent_context(parent),
                kind=SpanKind.SERVER,
                attributes=attributes,
            )
        except Exception as e:
            raise TelemetryBackendError(
                f"Could not start span for '{name}': {e}", operation="start_transaction"
            ) from e

        span_context = span.get_span_context()
        transaction = Transaction(
            name=name,
            op=op,
            trace_id=format(span_context.trace_id, "032x"),
            span_id=format(span_context.span_id, "016x"),
            parent_span_id=parent.span_id if parent else None,
            sampled=span_context.trace_flags.sampled,
            on_finish=partial(self._end_span, span),
        )
        self._open_spans[transaction.span_id] = span
        return transaction

    @staticmethod
    def _parent_context(parent: Optional[TraceparentToken]) -> Context:
        # An empty Context makes the span a root, regardless of ambient spans
        if parent is None:
            return Context()
        return set_span_in_context(NonRecordingSpan(parent.to_span_context()), Context())

    def _end_span(self, span: Span, transaction: Transaction) -> None:
        self._open_spans.pop(transaction.span_id, None)
        if transaction.http_status is not None:
            span.set_attribute("http.response.status_code", transaction.http_status)
            span.set_attribute("tracekeeper.status", transaction.status)
            if transaction.http_status >= 500:
                span.set_status(Status(StatusCode.ERROR, transaction.status))
        end_time = None
        if transaction.timestamp is not None:
            end_time = int(transaction.timestamp.timestamp() * 1_000_000_000)
        span.end(end_time=end_time)

    # ── Errors ────────────────────────────────────────────────────────────

    def capture_exception(self, error: BaseException, scope: RequestScope) -> Optional[str]:
        original = error.original if isinstance(error, CapturedError) else error
        event: Dict[str, Any] = {
            "event_id": uuid.uuid4().hex,
            "exception": {
                "type": type(original).__name__,
                "message": str(original),
            },
        }
        event = scope.apply_event_processors(event)
        if event is None:
            return None

        attributes = _flatten("", {k: v for k, v in event.items() if k != "event_id"}, {})
        attributes["event.id"] = event["event_id"]

        try:
            span = None
            if scope.transaction is not None:
                span = self._open_spans.get(scope.transaction.span_id)
            if span is not None:
                span.record_exception(error, attributes=attributes)
                span.set_status(Status(StatusCode.ERROR, str(original)))
            else:
                # No request span to attach to: record on a short-lived span
                standalone = self._tracer.start_span(
                    "captured_exception", context=Context(), kind=SpanKind.INTERNAL
                )
                standalone.record_exception(error, attributes=attributes)
                standalone.set_status(Status(StatusCode.ERROR, str(original)))
                standalone.end()
        except Exception as e:
            raise TelemetryBackendError(
                f"Could not record exception: {e}", operation="capture_exception"
            ) from e

        return event["event_id"]

    # ── Flush ─────────────────────────────────────────────────────────────

    async def flush(self, timeout: float) -> bool:
        # force_flush blocks on the exporter; keep it off the event loop
        return await asyncio.to_thread(self._provider.force_flush, int(timeout * 1000))


# ── Shared Instance ───────────────────────────────────────────────────────
# One provider per process: every wrapped handler shares the same span queue,
# so a flush from any request drains it. Created on first use so importing
# the package never touches exporter configuration.
_default_backend: Optional[OtelTelemetryBackend] = None


def get_default_backend() -> OtelTelemetryBackend:
    global _default_backend
    if _default_backend is None:
        _default_backend = OtelTelemetryBackend()
    return _default_backend
