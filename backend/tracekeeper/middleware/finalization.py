"""
TraceKeeper — Response Finalization Interceptor
===============================================

What:  A decorating wrapper around the host's response whose end() makes the
       real completion wait for finish + flush of the request's transaction.
Why:   Once the real completion runs, a serverless host may freeze the
       process. Telemetry must be on the wire before that.
How:   Composition, not patching: the wrapper forwards attribute access to
       the wrapped response and intercepts only the completion primitive.

The Two-Phase Completion Protocol:
    Many hosts check synchronously, right after the handler returns, that the
    response is finished, and complain if it isn't. Flushing is async, so at
    that moment the real completion hasn't run yet.

    Phase 1 (synchronous, handler_returned): if a completion is pending, mark
        the host response finished so the host's check passes.
    Phase 2 (deferred task, started by end()):
        1. finish + flush (memoized: one finalization per response)
        2. wait for a later event-loop turn; phase 1 and the host's check
           run in one synchronous step, so they cannot interleave with this
           task
        3. put the host's finished flag back to False if phase 1 forced it
        4. run the real completion primitive, once

    Known sharp edge: this relies on the host doing its check synchronously
    after the handler returns. Hosts with an explicit post-handler hook
    should await wait_closed() there instead (the ASGI adapter does).
"""

import asyncio
import inspect
import logging
from typing import Any, Optional

from tracekeeper.models.transaction import Transaction
from tracekeeper.services.flush import FlushCoordinator, next_turn

logger = logging.getLogger(__name__)


class FinalizingResponse:
    """
    AugmentedResponse: host response + transaction + captured-error slots.

    Attributes:
        transaction:     The request's transaction (None if untraced)
        captured_error:  Error already reported for this response, if any

    Reads/writes of status_code, status_message and finished go to the
    wrapped response; any other attribute read is forwarded as well.
    """

    def __init__(self, response: Any, coordinator: FlushCoordinator):
        self._response = response
        self._coordinator = coordinator
        self.transaction: Optional[Transaction] = None
        self.captured_error: Optional[BaseException] = None
        self._finalization: Optional[asyncio.Task] = None
        self._completion: Optional[asyncio.Task] = None
        self._forced_finished = False

    # ── Forwarded state ───────────────────────────────────────────────────

    @property
    def wrapped(self) -> Any:
        return self._response

    @property
    def status_code(self) -> int:
        return getattr(self._response, "status_code", 200)

    @status_code.setter
    def status_code(self, value: int) -> None:
        self._response.status_code = value

    @property
    def status_message(self) -> str:
        return getattr(self._response, "status_message", "")

    @status_message.setter
    def status_message(self, value: str) -> None:
        self._response.status_message = value

    @property
    def finished(self) -> bool:
        return bool(getattr(self._response, "finished", False))

    @finished.setter
    def finished(self, value: bool) -> None:
        self._response.finished = value

    def __getattr__(self, name: str) -> Any:
        # Only called for attributes not found on the wrapper itself
        if name == "_response":
            raise AttributeError(name)
        return getattr(self._response, name)

    # ── Finalization ──────────────────────────────────────────────────────

    def finalize(self) -> "asyncio.Task":
        """Finish + flush for this response; repeated calls share one task."""
        if self._finalization is None:
            self._finalization = asyncio.get_running_loop().create_task(
                self._coordinator.finalize(self)
            )
        return self._finalization

    def end(self, *args: Any, **kwargs: Any) -> "asyncio.Task":
        """
        Intercepted completion primitive.

        Returns immediately with the completion task; awaiting it is optional.
        Calling end() again returns the same task, so the real primitive runs
        exactly once.
        """
        if self._completion is None:
            self._completion = asyncio.get_running_loop().create_task(
                self._finalize_then_end(args, kwargs)
            )
            self._completion.add_done_callback(self._log_completion_failure)
        else:
            logger.debug("end() called again; reusing pending completion")
        return self._completion

    async def _finalize_then_end(self, args: tuple, kwargs: dict) -> Any:
        await self.finalize()
        await next_turn()

        # Undo phase 1 so the real primitive doesn't refuse to run
        if self._forced_finished:
            self._response.finished = False
            self._forced_finished = False

        result = self._response.end(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _log_completion_failure(task: "asyncio.Task") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Response completion failed: %s", error, exc_info=error)

    def handler_returned(self, succeeded: bool = True) -> None:
        """
        Phase 1. Called synchronously by the wrap point right before it
        returns control to the host.
        """
        if self._completion is not None:
            if succeeded and not self._completion.done() and not self.finished:
                self._response.finished = True
                self._forced_finished = True
        else:
            # The handler never completed the response; the host's own check
            # will report that, but the telemetry still goes out
            self.finalize()

    async def wait_closed(self) -> None:
        """
        Await phase 2 from a host's post-handler hook.

        Completes once the real completion primitive has run, or, if the
        handler never called end(), once finish + flush is done.
        """
        if self._completion is not None:
            await asyncio.shield(self._completion)
        elif self._finalization is not None:
            await asyncio.shield(self._finalization)
