"""
TraceKeeper — Abstract Telemetry Backend Interface
==================================================

What:  Abstract base class defining the contract for the telemetry backend
       (the thing that owns sampling, buffering and transport).
Why:   The lifecycle coordination in this package is independent of where
       events end up. Abstracting the backend lets the OpenTelemetry SDK be
       swapped for another collector client, and lets tests use a recording
       fake.
How:   Concrete implementations inherit from TelemetryBackend.

Implementations:
    - OtelTelemetryBackend: OpenTelemetry SDK + OTLP/console exporter
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from tracekeeper.models.transaction import Transaction
from tracekeeper.schemas.traceparent import TraceparentToken
from tracekeeper.services.scope import RequestScope


class TelemetryBackend(ABC):
    """
    Contract:
        - start_transaction() returns a Transaction whose finish() hands the
          transaction back to this backend for export
        - capture_exception() records an error event; it runs the scope's
          event processors before recording
        - flush() drains buffered events, waiting at most `timeout` seconds
        - Implementation errors are raised as TelemetryBackendError; callers
          in this package log and contain them
    """

    @abstractmethod
    def start_transaction(
        self,
        name: str,
        op: str,
        parent: Optional[TraceparentToken] = None,
        sampling_context: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        Start a transaction, as a child of `parent` when one is given.

        Args:
            name:              Transaction name, "<METHOD> <normalized path>"
            op:                Operation tag
            parent:            Inbound propagation token, if any
            sampling_context:  Extra data for the sampling decision
                              (e.g. {"request": RequestDescriptor})
        """
        ...

    @abstractmethod
    def capture_exception(self, error: BaseException, scope: RequestScope) -> Optional[str]:
        """
        Record `error` as an event annotated by `scope`.

        Returns:
            The event id, or None when an event processor dropped the event.
        """
        ...

    @abstractmethod
    async def flush(self, timeout: float) -> bool:
        """
        Transmit every pending event, waiting at most `timeout` seconds.

        Returns:
            True if the queue drained within the timeout.
        """
        ...
