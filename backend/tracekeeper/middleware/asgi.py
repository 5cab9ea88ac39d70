"""
TraceKeeper — ASGI Tracing Middleware
=====================================

What:  Pure ASGI middleware that runs every HTTP request of a Starlette /
       FastAPI app through `with_tracing`.
Why:   BaseHTTPMiddleware only sees the finished Response object; holding the
       final body message until the flush is done needs access to `send`.
How:   The downstream app's `send` is intercepted. The final
       `http.response.body` message (no `more_body`) is the completion
       primitive: it is routed through FinalizingResponse.end(). After the
       app returns, the middleware awaits wait_closed() before returning to
       the server. That is the explicit post-handler hook, so the server's
       "did the app complete the response?" check only runs once the body
       has really been sent.

Usage:
    app = FastAPI()
    app.add_middleware(TracingMiddleware)
"""

import logging
from typing import Optional

from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from tracekeeper.config import Settings
from tracekeeper.exceptions import ResponseAlreadyCompletedError
from tracekeeper.middleware.finalization import FinalizingResponse
from tracekeeper.middleware.wrapper import with_tracing
from tracekeeper.schemas.request import RequestDescriptor
from tracekeeper.services.telemetry_base import TelemetryBackend

logger = logging.getLogger(__name__)

TRACE_ID_HEADER = b"x-trace-id"


def describe_starlette_request(request: Request) -> RequestDescriptor:
    url = request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return RequestDescriptor(
        method=request.method,
        url=url,
        headers=dict(request.headers),
        query=dict(request.query_params),
    )


class AsgiResponseChannel:
    """
    Response descriptor over an ASGI `send` callable.

    status_code is taken from the app's `http.response.start` message;
    end() forwards the final body message and marks the channel finished.
    Sending after that raises ResponseAlreadyCompletedError, mirroring the
    server's own protection.
    """

    def __init__(self, send: Send):
        self._send = send
        self.status_code = 200
        self.status_message = "OK"
        self.finished = False
        self.finalizer: Optional[FinalizingResponse] = None

    async def forward(self, message: Message) -> None:
        if self.finished:
            raise ResponseAlreadyCompletedError()
        await self._send(message)

    async def end(self, message: Optional[Message] = None) -> None:
        if message is None:
            message = {"type": "http.response.body", "body": b"", "more_body": False}
        await self.forward(message)
        self.finished = True

    def intercepting_send(self, response: FinalizingResponse) -> Send:
        async def send(message: Message) -> None:
            if message["type"] == "http.response.start":
                self.status_code = message["status"]
                transaction = response.transaction
                if transaction is not None:
                    headers = list(message.get("headers", []))
                    headers.append((TRACE_ID_HEADER, transaction.trace_id.encode()))
                    message = {**message, "headers": headers}
                await self.forward(message)
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                # Not awaited: the completion waits for the app to return
                response.end(message)
            else:
                await self.forward(message)

        return send


class TracingMiddleware:
    """
    Raw ASGI middleware (NOT BaseHTTPMiddleware) tracing HTTP requests.

    Non-HTTP scopes (websocket, lifespan) pass through untouched.
    """

    def __init__(
        self,
        app: ASGIApp,
        backend: Optional[TelemetryBackend] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.app = app
        self._traced = with_tracing(
            self._call_app,
            backend=backend,
            config=config,
            describe_request=describe_starlette_request,
            name=getattr(app, "__name__", type(app).__name__),
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        channel = AsgiResponseChannel(send)
        try:
            await self._traced(Request(scope, receive), channel)
        except Exception:
            await self._wait_closed(channel, quiet=True)
            raise
        await self._wait_closed(channel)

    async def _call_app(self, request: Request, response: FinalizingResponse) -> None:
        channel: AsgiResponseChannel = response.wrapped
        channel.finalizer = response
        await self.app(request.scope, request.receive, channel.intercepting_send(response))

    @staticmethod
    async def _wait_closed(channel: AsgiResponseChannel, quiet: bool = False) -> None:
        if channel.finalizer is None:
            return
        if not quiet:
            await channel.finalizer.wait_closed()
            return
        # The app's own error is propagating; don't let ours replace it
        try:
            await channel.finalizer.wait_closed()
        except Exception as e:
            logger.warning("Response completion failed after app error: %s", e)
