"""Booking tools exposed to the voice agent"""
from .dispatcher import (
    CHECK_AVAILABILITY,
    CREATE_BOOKING,
    ToolCall,
    ToolDispatcher,
    ToolResponse,
)
from .declarations import build_function_declarations

__all__ = [
    "CHECK_AVAILABILITY",
    "CREATE_BOOKING",
    "ToolCall",
    "ToolDispatcher",
    "ToolResponse",
    "build_function_declarations",
]
