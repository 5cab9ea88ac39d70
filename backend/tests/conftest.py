"""
TraceKeeper — Test Configuration (conftest.py)
==============================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Provides reusable test infrastructure (a recording telemetry backend,
       a fake host response, an instrumented ASGI app).
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.
Who:   Used by all test files in the tests/ directory.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── events: Shared ordered log ("start", "capture", "finish", "flush", "end")
    ├── backend / make_backend: RecordingBackend writing into `events`
    ├── host_response / make_host_response: HostResponse writing into `events`
    ├── test_settings: Settings with a short flush timeout
    ├── wait_until: Polls a predicate while letting the event loop run
    └── test_client: HTTPX AsyncClient over a FastAPI app with TracingMiddleware
"""

import asyncio
import os
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings for testing BEFORE any tracekeeper imports
# Why: the module-level settings singleton reads the environment on import
os.environ["TRACEKEEPER_EXPORTER"] = "none"
os.environ["TRACEKEEPER_LOG_LEVEL"] = "WARNING"

from tracekeeper.config import Settings  # noqa: E402
from tracekeeper.exceptions import ResponseAlreadyCompletedError  # noqa: E402
from tracekeeper.models.transaction import Transaction  # noqa: E402
from tracekeeper.schemas.traceparent import TraceparentToken  # noqa: E402
from tracekeeper.services.scope import RequestScope  # noqa: E402
from tracekeeper.services.telemetry_base import TelemetryBackend  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ══════════════════════════════════════════════════════════════════════════


class RecordingBackend(TelemetryBackend):
    """
    In-memory TelemetryBackend.

    Every operation appends a marker to the shared `events` list so tests
    can assert on the ORDER of finish / flush / end across components.
    """

    def __init__(self, events: List[str], flush_result: bool = True, flush_delay: float = 0.0):
        self.events = events
        self.flush_result = flush_result
        self.flush_delay = flush_delay
        self.started: List[Transaction] = []
        self.finished: List[Transaction] = []
        self.captured: List[tuple] = []
        self.flush_calls = 0

    def start_transaction(
        self,
        name: str,
        op: str,
        parent: Optional[TraceparentToken] = None,
        sampling_context: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        if parent is not None:
            transaction = Transaction.continue_from(parent, name, op, on_finish=self._on_finish)
        else:
            transaction = Transaction(name=name, op=op, sampled=True, on_finish=self._on_finish)
        self.started.append(transaction)
        self.events.append("start")
        return transaction

    def _on_finish(self, transaction: Transaction) -> None:
        self.finished.append(transaction)
        self.events.append("finish")

    def capture_exception(self, error: BaseException, scope: RequestScope) -> Optional[str]:
        event = scope.apply_event_processors(
            {"exception": {"type": type(error).__name__, "message": str(error)}}
        )
        self.captured.append((error, event))
        self.events.append("capture")
        return f"event-{len(self.captured)}"

    async def flush(self, timeout: float) -> bool:
        self.flush_calls += 1
        if self.flush_delay:
            await asyncio.sleep(self.flush_delay)
        self.events.append("flush")
        return self.flush_result


class HostResponse:
    """
    Stand-in for a platform response object.

    end() is the completion primitive. Like a real server response it
    refuses to run twice ("write after end").
    """

    def __init__(self, events: List[str]):
        self.status_code = 200
        self.status_message = "OK"
        self.finished = False
        self.body: Any = None
        self.end_calls = 0
        self._events = events

    def end(self, body: Any = None) -> None:
        if self.finished:
            raise ResponseAlreadyCompletedError()
        self.end_calls += 1
        self.body = body
        self.finished = True
        self._events.append("end")


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(0.001)


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures (created fresh for each test)
# ══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def events() -> List[str]:
    return []


@pytest.fixture
def backend(events):
    return RecordingBackend(events)


@pytest.fixture
def make_backend(events):
    """Factory for backends with custom flush behaviour."""

    def factory(**kwargs) -> RecordingBackend:
        return RecordingBackend(events, **kwargs)

    return factory


@pytest.fixture
def host_response(events):
    return HostResponse(events)


@pytest.fixture
def make_host_response(events):
    """Factory for extra host responses (concurrent-request tests)."""

    def factory() -> HostResponse:
        return HostResponse(events)

    return factory


@pytest.fixture
def test_settings():
    """
    Settings for tests.

    What:    Tracing on, no exporter, a short flush timeout.
    Why:     Tests must never wait the production 2s on a slow flush.
    """
    return Settings(exporter="none", flush_timeout=0.5, log_level="WARNING")


@pytest.fixture
def wait_until():
    """
    Provides `await wait_until(predicate)`.

    Phase 2 of the completion protocol runs in a background task; tests use
    this to wait for it without sleeping a fixed amount.
    """
    return _wait_until


@pytest.fixture
def traced_app(backend, test_settings):
    """
    FastAPI app wrapped in TracingMiddleware with the recording backend.

    Routes:
        GET /items/{item_id}   → JSON echo (item_id may repeat in ?item=)
        GET /stream            → StreamingResponse in three chunks
        GET /missing           → 404 via HTTPException
        GET /boom              → RuntimeError("boom")
    """
    from fastapi import FastAPI, HTTPException
    from fastapi.responses import StreamingResponse

    from tracekeeper.middleware.asgi import TracingMiddleware

    app = FastAPI()
    app.add_middleware(TracingMiddleware, backend=backend, config=test_settings)

    @app.get("/items/{item_id}")
    async def read_item(item_id: str):
        return {"item_id": item_id}

    @app.get("/stream")
    async def stream():
        async def chunks():
            for part in (b"a", b"b", b"c"):
                yield part

        return StreamingResponse(chunks(), media_type="text/plain")

    @app.get("/missing")
    async def missing():
        raise HTTPException(status_code=404, detail="Not here")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("boom")

    return app


@pytest_asyncio.fixture
async def test_client(traced_app):
    """
    Provides an async HTTP test client for the instrumented app.

    How:     ASGITransport routes requests directly to the app. App errors
             are turned into 500 responses (raise_app_exceptions=False), the
             way a real server reports them.
    """
    transport = ASGITransport(app=traced_app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
