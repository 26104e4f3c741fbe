"""
TwiML for incoming calls.

The call is connected straight to our Media Streams websocket with no <Say>
in front, so the first thing the caller hears is the AI greeting.
"""
import logging
from typing import Mapping, Optional

from twilio.twiml.voice_response import Connect, VoiceResponse

logger = logging.getLogger(__name__)


def generate_twiml(websocket_url: str, parameters: Optional[Mapping[str, str]] = None) -> str:
    """
    Build the <Connect><Stream> response for a voice webhook.

    Args:
        websocket_url: wss:// URL Twilio opens the Media Stream to
        parameters: Sent as <Parameter> elements; Twilio echoes them back in
            start.customParameters

    Returns:
        TwiML XML string
    """
    connect = Connect()
    stream = connect.stream(url=websocket_url)
    for name, value in (parameters or {}).items():
        stream.parameter(name=name, value=value)

    twiml = str(VoiceResponse().append(connect))
    logger.debug(f"TwiML for {websocket_url}: {twiml}")
    return twiml
