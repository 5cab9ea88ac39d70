"""
TraceKeeper — Exception Mechanism Metadata
==========================================

What:  Describes HOW an error reached the telemetry backend.
Why:   The collector distinguishes errors caught by instrumentation wrappers
       from errors reported manually; `handled=True` also marks an error as
       already reported so a second capture path skips it.
"""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class ExceptionMechanism(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = Field(default="instrument")
    handled: bool = Field(default=True)
    handler_name: str = Field(default="<anonymous>", description="Name of the wrapped handler")
    wrapper_name: str = Field(default="with_tracing", description="Instrumentation entry point")

    def to_event_data(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "handled": self.handled,
            "data": {
                "wrapped_handler": self.handler_name,
                "function": self.wrapper_name,
            },
        }
