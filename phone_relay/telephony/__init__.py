"""Twilio Media Streams integration modules"""
from .models import TwilioMessage, StartMessage, MediaPayload, clear_message, media_message
from .twiml import generate_twiml

__all__ = [
    "generate_twiml",
    "TwilioMessage",
    "StartMessage",
    "MediaPayload",
    "clear_message",
    "media_message",
]
