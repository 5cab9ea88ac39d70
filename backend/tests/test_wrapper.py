"""
TraceKeeper — with_tracing() End-to-End Tests
=============================================

What:  Drives wrapped handlers the way a host does: call, await, then check
       synchronously that the response is finished.
Why:   These are the guarantees users rely on: telemetry flushed before the
       response completes, errors reported once and re-raised unchanged,
       concurrent requests isolated.

What we test:
    ✅ Success: finish → flush → end, host check passes, single real end
    ✅ Transaction naming and trace continuation from the header
    ✅ Malformed header / tracing disabled
    ✅ Failure: same error re-raised, 500 recorded, reported once
    ✅ Failure with a slow or failing flush: still bounded, same error
    ✅ Handlers that await end() or never call it
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from tracekeeper.middleware.wrapper import with_tracing
from tracekeeper.services.error_capture import ErrorCaptureBridge, get_mechanism
from tracekeeper.services.scope import RequestScope, get_current_scope

TRACE_ID = "a" * 32
SPAN_ID = "b" * 16


def make_request(url: str = "/a/5/b/5?x=5&y=5", method: str = "get", headers=None):
    """Duck-typed host request; the query map is parsed from the url."""
    return SimpleNamespace(method=method, url=url, headers=headers or {})


class TestSuccessPath:

    @pytest.mark.asyncio
    async def test_flush_before_completion(self, backend, events, host_response, test_settings, wait_until):
        async def handler(req, res):
            res.status_code = 200
            res.end("ok")

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        await wrapped(make_request(), host_response)

        # The host's synchronous check right after the handler returns
        assert host_response.finished is True

        await wait_until(lambda: host_response.end_calls == 1)
        assert events == ["start", "finish", "flush", "end"]
        assert host_response.body == "ok"

        transaction = backend.finished[0]
        assert transaction.name == "GET /a/[x]/b/[x]"
        assert transaction.op == "http.server"
        assert transaction.http_status == 200
        assert transaction.status == "ok"

    @pytest.mark.asyncio
    async def test_double_end_completes_once(self, backend, host_response, test_settings, wait_until):
        completions = []

        async def handler(req, res):
            completions.append(res.end("first"))
            completions.append(res.end("second"))

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        await wrapped(make_request(), host_response)

        assert completions[0] is completions[1]
        await completions[0]
        await asyncio.sleep(0.01)

        assert host_response.end_calls == 1
        assert host_response.body == "first"
        assert backend.flush_calls == 1

    @pytest.mark.asyncio
    async def test_handler_awaiting_end(self, backend, events, host_response, test_settings):
        async def handler(req, res):
            await res.end("done")
            return "result"

        wrapped = with_tracing(handler, backend=backend, config=test_settings)

        assert await wrapped(make_request(), host_response) == "result"
        assert host_response.end_calls == 1
        assert events == ["start", "finish", "flush", "end"]

    @pytest.mark.asyncio
    async def test_handler_never_ending_response(self, backend, events, host_response, test_settings, wait_until):
        """Not faked as finished; telemetry is still flushed."""

        async def handler(req, res):
            res.status_code = 204

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        await wrapped(make_request(), host_response)

        assert host_response.finished is False
        await wait_until(lambda: "flush" in events)
        assert events == ["start", "finish", "flush"]
        assert backend.finished[0].http_status == 204

    @pytest.mark.asyncio
    async def test_handler_sees_transaction_in_scope(self, backend, host_response, test_settings):
        seen = {}

        async def handler(req, res):
            seen["scope"] = get_current_scope()
            seen["transaction"] = res.transaction
            res.end()

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        await wrapped(make_request(), host_response)

        assert seen["scope"].transaction is seen["transaction"]
        assert get_current_scope() is None

    @pytest.mark.asyncio
    async def test_wrapped_handler_keeps_name(self, backend, test_settings):
        async def list_orders(req, res):
            pass

        assert with_tracing(list_orders, backend=backend, config=test_settings).__name__ == "list_orders"


class TestTracePropagation:

    @pytest.mark.asyncio
    async def test_continues_inbound_trace(self, backend, host_response, test_settings):
        async def handler(req, res):
            res.end()

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        request = make_request(headers={"Traceparent": f"00-{TRACE_ID}-{SPAN_ID}-01"})
        await wrapped(request, host_response)

        transaction = backend.started[0]
        assert transaction.trace_id == TRACE_ID
        assert transaction.parent_span_id == SPAN_ID
        assert transaction.span_id != SPAN_ID
        assert transaction.sampled is True

    @pytest.mark.asyncio
    async def test_malformed_header_starts_fresh_trace(self, backend, host_response, test_settings):
        async def handler(req, res):
            res.end()

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        await wrapped(make_request(headers={"traceparent": f"00-{TRACE_ID}-{SPAN_ID}-x"}), host_response)

        transaction = backend.started[0]
        assert transaction.parent_span_id is None
        assert transaction.trace_id != TRACE_ID

    @pytest.mark.asyncio
    async def test_all_zero_trace_id_starts_fresh_trace(self, backend, host_response, test_settings):
        async def handler(req, res):
            res.end()

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        await wrapped(make_request(headers={"traceparent": f"00-{'0' * 32}-{SPAN_ID}-01"}), host_response)

        transaction = backend.started[0]
        assert transaction.parent_span_id is None
        assert transaction.trace_id != "0" * 32

    @pytest.mark.asyncio
    async def test_tracing_disabled(self, backend, events, host_response, test_settings, wait_until):
        async def handler(req, res):
            assert res.transaction is None
            res.end()

        config = test_settings.model_copy(update={"tracing_enabled": False})
        wrapped = with_tracing(handler, backend=backend, config=config)
        await wrapped(make_request(), host_response)

        await wait_until(lambda: host_response.end_calls == 1)
        assert backend.started == []
        assert events == ["flush", "end"]

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_isolated(self, backend, make_host_response, test_settings):
        seen = {}

        async def handler(req, res):
            await asyncio.sleep(0.01 if req.url == "/slow" else 0)
            seen[req.url] = get_current_scope().transaction.name
            res.end()

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        await asyncio.gather(
            wrapped(make_request("/slow"), make_host_response()),
            wrapped(make_request("/fast"), make_host_response()),
        )

        assert seen == {"/slow": "GET /slow", "/fast": "GET /fast"}


class TestFailurePath:

    @pytest.mark.asyncio
    async def test_error_is_reraised_unchanged(self, backend, events, host_response, test_settings):
        error = RuntimeError("boom")

        async def handler(req, res):
            raise error

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        with pytest.raises(RuntimeError) as exc_info:
            await wrapped(make_request(), host_response)

        assert exc_info.value is error
        assert backend.captured[0][0] is error
        assert events == ["start", "capture", "finish", "flush"]

        assert host_response.status_code == 500
        assert host_response.status_message == "Internal Server Error"
        assert backend.finished[0].http_status == 500
        assert host_response.finished is False

    @pytest.mark.asyncio
    async def test_error_is_tagged_with_handler_mechanism(self, backend, host_response, test_settings):
        async def checkout(req, res):
            raise ValueError("card declined")

        wrapped = with_tracing(checkout, backend=backend, config=test_settings)
        with pytest.raises(ValueError) as exc_info:
            await wrapped(make_request("/checkout", method="post"), host_response)

        mechanism = get_mechanism(exc_info.value)
        assert mechanism.handled is True
        assert mechanism.handler_name == "checkout"

        _, event = backend.captured[0]
        assert event["exception"]["mechanism"]["data"] == {
            "wrapped_handler": "checkout",
            "function": "with_tracing",
        }
        assert event["request"]["method"] == "POST"
        assert event["request"]["url"] == "/checkout"

    @pytest.mark.asyncio
    async def test_host_capturing_again_is_noop(self, backend, host_response, test_settings):
        async def handler(req, res):
            raise RuntimeError("boom")

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        with pytest.raises(RuntimeError) as exc_info:
            await wrapped(make_request(), host_response)

        ErrorCaptureBridge(backend).capture(exc_info.value, RequestScope())

        assert len(backend.captured) == 1

    @pytest.mark.asyncio
    async def test_error_after_end_keeps_single_flush(self, backend, host_response, test_settings, wait_until):
        async def handler(req, res):
            res.end("partial")
            raise RuntimeError("late failure")

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        with pytest.raises(RuntimeError):
            await wrapped(make_request(), host_response)

        await wait_until(lambda: host_response.end_calls == 1)
        assert backend.flush_calls == 1
        assert len(backend.finished) == 1

    @pytest.mark.asyncio
    async def test_slow_flush_is_bounded_and_keeps_error(self, make_backend, host_response, test_settings):
        backend = make_backend(flush_delay=5.0)
        error = RuntimeError("boom")

        async def handler(req, res):
            raise error

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(RuntimeError) as exc_info:
            await wrapped(make_request(), host_response)
        elapsed = loop.time() - started

        # flush_timeout is 0.5s in test_settings
        assert elapsed < 2.0
        assert exc_info.value is error
        assert backend.flush_calls == 1
        assert backend.finished[0].http_status == 500
        assert host_response.status_code == 500

    @pytest.mark.asyncio
    async def test_failing_flush_keeps_error(self, backend, host_response, test_settings):
        backend.flush = AsyncMock(side_effect=ConnectionError("collector unreachable"))
        error = ValueError("card declined")

        async def handler(req, res):
            raise error

        wrapped = with_tracing(handler, backend=backend, config=test_settings)
        with pytest.raises(ValueError) as exc_info:
            await wrapped(make_request(), host_response)

        assert exc_info.value is error
        backend.flush.assert_awaited_once()
        assert backend.finished[0].http_status == 500
        assert host_response.status_code == 500
