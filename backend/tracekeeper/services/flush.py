"""
TraceKeeper — Flush Coordinator
===============================

What:  Drains the backend's pending events with a bounded wait, and runs the
       finish-then-flush sequence for one response.
Why:   A serverless host may freeze the process as soon as the response
       completes. Anything not transmitted by then is lost, so completion
       waits for the drain, but never for longer than `flush_timeout`.
How:   asyncio.wait_for() around the backend's flush(). Every failure is
       logged and swallowed: the coordinator is also called on the error
       path, where raising would replace the handler's real error.
"""

import asyncio
import logging
from typing import Any, Optional

from tracekeeper.config import Settings, settings
from tracekeeper.services.lifecycle import TransactionLifecycleManager
from tracekeeper.services.telemetry_base import TelemetryBackend

logger = logging.getLogger(__name__)


async def next_turn() -> None:
    """
    Resume only in a later iteration of the event loop.

    The future is resolved by a callback queued with call_soon(); the loop
    runs it after everything currently executing has yielded, so any
    synchronous code the caller of the current step still has to run (such
    as a host's "is the response finished?" check) runs first.
    """
    loop = asyncio.get_running_loop()
    turn: asyncio.Future = loop.create_future()
    loop.call_soon(turn.set_result, None)
    await turn


class FlushCoordinator:
    """
    Bounded, never-raising drain of the telemetry queue.

    Thread Safety:
        Many requests may flush concurrently; serializing the underlying
        queue is the backend's job.
    """

    def __init__(
        self,
        backend: TelemetryBackend,
        lifecycle: TransactionLifecycleManager,
        config: Optional[Settings] = None,
    ):
        self._backend = backend
        self._lifecycle = lifecycle
        self._config = config or settings

    async def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Transmit pending events, waiting at most `timeout` seconds.

        Returns:
            True when the backend reports a complete drain, False on timeout
            or failure. Never raises (cancellation still propagates).
        """
        if timeout is None:
            timeout = self._config.flush_timeout

        try:
            logger.debug("Flushing events...")
            drained = await asyncio.wait_for(self._backend.flush(timeout), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out after %.1fs while flushing events", timeout)
            return False
        except Exception as e:
            logger.warning("Error while flushing events: %s", e, exc_info=True)
            return False

        if drained:
            logger.debug("Done flushing events")
        else:
            logger.warning("Backend could not drain all events within %.1fs", timeout)
        return bool(drained)

    async def finalize(self, response: Any) -> bool:
        """
        Finish the response's transaction, then flush.

        The finish is pushed to a later loop iteration so spans still open in
        the handler get a chance to close before the transaction does.
        """
        transaction = getattr(response, "transaction", None)
        if transaction is not None:
            await next_turn()
            self._lifecycle.finish(transaction, response)
        return await self.flush()
