"""
TraceKeeper — Error Capture Bridge
==================================

What:  Turns a handler failure into exactly one telemetry event, records the
       failure on the response/transaction, and hands the error back for
       re-raising unchanged.
Why:   The same failure can surface through more than one path in a single
       process (the handler's except block, the host's own error hook, a
       second capture call in user code). Reporting it once needs a marker
       that travels WITH the error object.
How:   Exceptions carry the marker as an attribute (their identity and type
       are preserved so host-level handling is unaffected). Values that can't
       carry attributes are boxed into an explicit CapturedError wrapper.

Failure sequence:
    1. box (non-exception values only)
    2. tag with ExceptionMechanism + report, unless already tagged
    3. response status → 500 "Internal Server Error"
    4. finish + flush (the response's single finalization)
    5. return the same error object for the caller to re-raise
"""

import logging
from typing import Any, Optional

from tracekeeper.exceptions import TelemetryBackendError
from tracekeeper.schemas.mechanism import ExceptionMechanism
from tracekeeper.services.scope import Event, RequestScope
from tracekeeper.services.telemetry_base import TelemetryBackend

logger = logging.getLogger(__name__)

MECHANISM_ATTR = "__tracekeeper_mechanism__"

WRAPPER_NAME = "with_tracing"


class CapturedError(Exception):
    """
    Explicit box for a raised value that cannot carry its own state.

    Attributes:
        original:  The value as it was raised/reported
    """

    def __init__(self, original: Any):
        super().__init__(original)
        self.original = original

    @property
    def handled(self) -> bool:
        return is_handled(self)

    def __str__(self) -> str:
        return str(self.original)

    def __repr__(self) -> str:
        return f"CapturedError({self.original!r})"


def box_error(value: Any) -> BaseException:
    """Return `value` itself if it is an exception, else a CapturedError around it."""
    if isinstance(value, BaseException):
        return value
    return CapturedError(value)


def get_mechanism(error: BaseException) -> Optional[ExceptionMechanism]:
    return getattr(error, MECHANISM_ATTR, None)


def is_handled(error: BaseException) -> bool:
    mechanism = get_mechanism(error)
    return mechanism is not None and mechanism.handled


def add_exception_mechanism(event: Event, mechanism: ExceptionMechanism) -> Event:
    event.setdefault("exception", {})["mechanism"] = mechanism.to_event_data()
    return event


class ErrorCaptureBridge:
    """Report-once bridge between handler failures and the telemetry backend."""

    def __init__(self, backend: TelemetryBackend, wrapper_name: str = WRAPPER_NAME):
        self._backend = backend
        self._wrapper_name = wrapper_name

    def capture(self, error: Any, scope: RequestScope, handler_name: str = "<anonymous>") -> BaseException:
        """
        Report `error` once and return the (possibly boxed) error object.

        Capturing an object that is already tagged as handled is a no-op that
        returns it unchanged.
        """
        boxed = box_error(error)
        if is_handled(boxed):
            logger.debug("Skipping already-reported error %r", boxed)
            return boxed

        mechanism = ExceptionMechanism(handler_name=handler_name, wrapper_name=self._wrapper_name)
        try:
            setattr(boxed, MECHANISM_ATTR, mechanism)
        except AttributeError:
            # Exception types with __slots__ and no __dict__ can't be tagged
            logger.debug("Cannot tag %r as reported; it may be captured again", boxed)

        scope.add_event_processor(lambda event: add_exception_mechanism(event, mechanism))

        try:
            event_id = self._backend.capture_exception(boxed, scope)
        except TelemetryBackendError as e:
            logger.warning("Could not report %r: %s", boxed, e.message)
        except Exception:
            logger.warning("Could not report %r", boxed, exc_info=True)
        else:
            logger.debug("Reported %r as event %s", boxed, event_id)

        return boxed

    async def handle_failure(
        self,
        error: Any,
        scope: RequestScope,
        response: Any,
        handler_name: str = "<anonymous>",
    ) -> BaseException:
        """
        Run the full failure sequence for a handler error.

        `response` is the FinalizingResponse of this request; its single
        finalization performs finish + flush.
        """
        boxed = self.capture(error, scope, handler_name)
        response.captured_error = boxed

        # The host hasn't had its turn to set 500 yet; without this the
        # transaction would be reported as successful
        response.status_code = 500
        response.status_message = "Internal Server Error"

        await response.finalize()
        return boxed
