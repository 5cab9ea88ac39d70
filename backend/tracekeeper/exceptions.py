"""
TraceKeeper — Custom Exception Hierarchy
========================================

What:  Library-specific exceptions for instrumentation failures.
Why:   Instrumentation must never become a source of request failure; having
       our own types lets the coordinating code catch exactly what it raised
       and let everything else (the handler's errors) pass through untouched.
How:   Each exception class carries a message and optional context dict.

Exception Hierarchy:
    TraceKeeperError (base)
    ├── ConfigurationError             → invalid exporter/backend settings
    ├── TelemetryBackendError          → backend could not start/record/export
    └── ResponseAlreadyCompletedError  → completion primitive invoked after end
"""

from typing import Any, Dict, Optional


class TraceKeeperError(Exception):
    """
    Base exception for all TraceKeeper errors.

    Attributes:
        message:  Human-readable error description
        context:  Additional debug info (logged alongside the message)
    """

    def __init__(
        self,
        message: str = "An unexpected instrumentation error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ConfigurationError(TraceKeeperError):
    """
    Raised when settings cannot produce a working telemetry backend.

    When:    `exporter=otlp` without an endpoint, unknown exporter names.
    Raised at backend construction time, never while serving a request.
    """

    def __init__(
        self,
        message: str = "Invalid telemetry configuration",
        setting: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if setting:
            ctx["setting"] = setting
        super().__init__(message=message, context=ctx)
        self.setting = setting


class TelemetryBackendError(TraceKeeperError):
    """
    Raised by a telemetry backend when it cannot perform an operation.

    The lifecycle manager and error bridge catch this and log it; the request
    continues untraced rather than failing.
    """

    def __init__(
        self,
        message: str = "Telemetry backend operation failed",
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if operation:
            ctx["operation"] = operation
        super().__init__(message=message, context=ctx)
        self.operation = operation


class ResponseAlreadyCompletedError(TraceKeeperError):
    """
    Raised by a response channel when its completion primitive runs twice.

    This is the "write after end" protection of the platform side; the
    finalizing wrapper guarantees it never triggers through normal use.
    """

    def __init__(
        self,
        message: str = "Response has already been completed (write after end)",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
