"""Gemini Live session modules"""
from .client import GeminiLiveClient
from .protocol import ServerMessage, build_setup

__all__ = [
    "GeminiLiveClient",
    "ServerMessage",
    "build_setup",
]
