# Services package init
"""
TraceKeeper — Services Layer
============================

What:  The coordination logic between the wrap point and the telemetry backend.

Service Inventory:
    - scope:          RequestScope + isolate() (per-request context)
    - lifecycle:      TransactionLifecycleManager (start / finish-once)
    - flush:          FlushCoordinator (bounded, never-raising drain)
    - error_capture:  ErrorCaptureBridge (report-once failure path)
    - telemetry_base: TelemetryBackend (abstract collaborator)
    - otel_backend:   OtelTelemetryBackend (OpenTelemetry SDK implementation)
"""
