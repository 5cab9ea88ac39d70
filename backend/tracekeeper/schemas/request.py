"""
TraceKeeper — Request Descriptor
================================

What:  The host-independent view of an inbound request that instrumentation
       needs: method, url, headers and the parsed query-parameter map.
Why:   The wrap point serves several hosts (plain handlers, ASGI); each
       adapter builds one of these instead of the core reading host objects.
"""

from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlsplit

from pydantic import BaseModel, Field, field_validator

# Never attached to captured events
SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "proxy-authorization", "set-cookie"})


class RequestDescriptor(BaseModel):
    """
    Snapshot of the request taken at wrap-point entry.

    Header keys are lowercased so lookups are case-insensitive.
    Query keys keep their insertion order (transaction naming depends on it).
    """

    method: str = Field(default="GET")
    url: str = Field(default="/", description="Path plus optional query string and fragment")
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("headers", mode="before")
    @classmethod
    def lowercase_header_keys(cls, v: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        if not v:
            return {}
        return {str(key).lower(): str(value) for key, value in v.items()}

    @field_validator("method", mode="before")
    @classmethod
    def default_method(cls, v: Optional[str]) -> str:
        return (v or "GET").upper()

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def safe_headers(self) -> Dict[str, str]:
        """Headers minus credentials, suitable for attaching to events."""
        return {k: v for k, v in self.headers.items() if k not in SENSITIVE_HEADERS}

    @classmethod
    def from_request(cls, request: Any) -> "RequestDescriptor":
        """
        Build a descriptor from a duck-typed request object.

        Reads `method`, `url`, `headers` and `query` attributes. When `query`
        is absent it is parsed from the url's query string.
        """
        if isinstance(request, cls):
            return request

        url = str(getattr(request, "url", "") or "/")
        query = getattr(request, "query", None)
        if query is None:
            query = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))

        return cls(
            method=getattr(request, "method", None),
            url=url,
            headers=dict(getattr(request, "headers", None) or {}),
            query=dict(query),
        )
