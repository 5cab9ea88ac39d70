"""
TraceKeeper — Configuration
===========================

What:  Centralized configuration management using Pydantic Settings.
Why:   Type-safe environment variable loading with validation on startup.
How:   Pydantic Settings reads TRACEKEEPER_* environment variables (or a .env
       file), validates types/ranges, and provides a singleton `settings`.
Who:   Read by the wrap point, the flush coordinator and the OpenTelemetry
       backend. Tests build their own `Settings(...)` instances.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Instrumentation settings loaded from environment variables.

    All settings have defaults suitable for local development; tracing is on,
    but spans are not exported anywhere until an exporter is configured.
    """

    # ── Tracing ───────────────────────────────────────────────────────────
    # What: Master switch for transaction creation
    # When off: errors are still captured and flushed, no transaction is started
    tracing_enabled: bool = Field(default=True)

    # What: Header carrying the inbound propagation token
    # Format: <2-hex-version>-<32-hex-trace-id>-<16-hex-span-id>-<2-hex-flags>
    trace_header: str = Field(default="traceparent")

    # What: Operation tag recorded on every request transaction
    transaction_op: str = Field(default="http.server")

    # ── Flush ─────────────────────────────────────────────────────────────
    # What: Upper bound (seconds) on waiting for the backend to drain
    # Trade-off: Higher = better delivery odds, but slower responses when the
    # collector is unreachable
    flush_timeout: float = Field(default=2.0, ge=0.1, le=30.0)

    # ── Backend / Export ──────────────────────────────────────────────────
    service_name: str = Field(default="tracekeeper")

    # Options: otlp (HTTP/protobuf to otlp_endpoint), console (stdout), none
    exporter: str = Field(default="none")

    # Format: http(s)://host:port/v1/traces
    otlp_endpoint: Optional[str] = Field(default=None)

    # What: Fraction of root transactions that are recorded
    # Child transactions follow the sampling decision of the inbound token
    traces_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)

    # ── Logging ───────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="TRACEKEEPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    @field_validator("exporter")
    @classmethod
    def validate_exporter(cls, v: str) -> str:
        valid_exporters = {"otlp", "console", "none"}
        lower = v.lower()
        if lower not in valid_exporters:
            raise ValueError(f"Invalid exporter '{v}'. Must be one of: {valid_exporters}")
        return lower

    @field_validator("otlp_endpoint")
    @classmethod
    def validate_otlp_endpoint(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid otlp_endpoint '{v}'. Must start with http:// or https://")
        return v

    @field_validator("trace_header")
    @classmethod
    def normalize_trace_header(cls, v: str) -> str:
        # Header lookups are case-insensitive; descriptors store lowercase keys
        return v.strip().lower()


# Singleton instance, imported by modules that need defaults
settings = Settings()
