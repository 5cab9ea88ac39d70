"""
TraceKeeper — Transaction Lifecycle Manager
===========================================

What:  Starts a request's transaction inside its scope and finishes it
       exactly once.
Why:   Both the success path (response completion) and the failure path
       (error bridge) try to finish the same transaction; only the first
       attempt may count, and its status must already be set when it does.
How:   start() asks the backend for a Transaction and binds it in the
       RequestScope. finish() copies the response status onto the
       transaction, then finishes it, unless it is already finished.

Transaction naming:
    "<UPPER METHOD> <path>" where each query-parameter value found in the
    path is replaced by its bracketed key:

        GET /users/42/posts?user=42  →  "GET /users/[user]/posts"

    This is a plain text substitution in query insertion order. A literal
    segment that happens to equal a parameter value is replaced too, and
    when two parameters share a value, the first key claims every
    occurrence:

        /a/5/b/5 with {x: "5", y: "5"}  →  "/a/[x]/b/[x]"

    Every occurrence is rewritten, where a single first-occurrence replace
    would leave later repeats in place. The departure is deliberate: a value
    repeated in the path is the same parameter, so it gets the same key.
"""

import logging
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from tracekeeper.exceptions import TelemetryBackendError
from tracekeeper.models.transaction import Transaction
from tracekeeper.schemas.request import RequestDescriptor
from tracekeeper.schemas.traceparent import TraceparentToken
from tracekeeper.services.scope import RequestScope
from tracekeeper.services.telemetry_base import TelemetryBackend

logger = logging.getLogger(__name__)

DEFAULT_OP = "http.server"


def strip_query_and_fragment(url: str) -> str:
    return url.split("?", 1)[0].split("#", 1)[0]


def _param_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value)
    return str(value)


def normalize_path(path: str, query: Optional[Mapping[str, Any]]) -> str:
    """Replace query-parameter values occurring in `path` with `[key]`."""
    for key, value in (query or {}).items():
        text = _param_text(value)
        if not text:
            continue
        path = path.replace(text, f"[{key}]")
    return path


def build_transaction_name(method: Optional[str], url: str, query: Optional[Mapping[str, Any]]) -> str:
    path = strip_query_and_fragment(url)
    # Absolute URLs: keep only the path part
    if "://" in path:
        path = urlsplit(path).path or "/"
    return f"{(method or 'GET').upper()} {normalize_path(path, query)}"


class TransactionLifecycleManager:
    """
    Owns transaction start/finish for the wrap point.

    Backend failures never fail the request: start() returns None and the
    request proceeds untraced; finish() logs and reports False.
    """

    def __init__(self, backend: TelemetryBackend, op: str = DEFAULT_OP):
        self._backend = backend
        self._op = op

    def start(
        self,
        scope: RequestScope,
        name: str,
        op: Optional[str] = None,
        parent: Optional[TraceparentToken] = None,
    ) -> Optional[Transaction]:
        """Start a transaction (child of `parent` if given) and bind it in `scope`."""
        try:
            transaction = self._backend.start_transaction(
                name=name,
                op=op or self._op,
                parent=parent,
                sampling_context={"request": scope.request},
            )
        except TelemetryBackendError as e:
            logger.warning("Could not start transaction '%s': %s", name, e.message)
            return None
        except Exception:
            logger.warning("Could not start transaction '%s'", name, exc_info=True)
            return None

        scope.set_transaction(transaction)
        return transaction

    def start_for_request(
        self,
        scope: RequestScope,
        request: RequestDescriptor,
        parent: Optional[TraceparentToken] = None,
    ) -> Optional[Transaction]:
        name = build_transaction_name(request.method, request.url, request.query)
        return self.start(scope, name, parent=parent)

    def finish(self, transaction: Transaction, response: Any) -> bool:
        """
        Record the response status on `transaction` and finish it.

        Returns:
            True if this call finished the transaction, False if it was
            already finished or the backend failed while exporting it.
        """
        if transaction.finished:
            logger.debug("Transaction %s already finished", transaction.span_id)
            return False

        status_code = getattr(response, "status_code", None)
        if status_code is not None:
            transaction.set_http_status(int(status_code))

        try:
            return transaction.finish()
        except Exception:
            logger.warning("Backend failed while finishing %r", transaction, exc_info=True)
            return False
