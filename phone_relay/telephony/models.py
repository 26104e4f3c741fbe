import json
from pydantic import BaseModel
from typing import Any, Dict, Optional, Literal


class MediaFormat(BaseModel):
    encoding: str = "audio/x-mulaw"
    sampleRate: int = 8000
    channels: int = 1


class StartMessage(BaseModel):
    streamSid: str
    callSid: Optional[str] = None
    tracks: list[str] = []
    mediaFormat: Optional[MediaFormat] = None
    customParameters: Dict[str, Any] = {}


class MediaPayload(BaseModel):
    payload: str  # base64-encoded mu-law audio
    track: Optional[str] = None
    chunk: Optional[int] = None
    timestamp: Optional[int] = None


class StopMessage(BaseModel):
    callSid: Optional[str] = None
    accountSid: Optional[str] = None


class MarkPayload(BaseModel):
    name: str


class DtmfPayload(BaseModel):
    digit: str
    track: Optional[str] = None


class TwilioMessage(BaseModel):
    event: Literal["connected", "start", "media", "stop", "mark", "dtmf"]
    streamSid: Optional[str] = None
    sequenceNumber: Optional[int] = None
    start: Optional[StartMessage] = None
    media: Optional[MediaPayload] = None
    stop: Optional[StopMessage] = None
    mark: Optional[MarkPayload] = None
    dtmf: Optional[DtmfPayload] = None


def media_message(stream_sid: str, payload: str) -> str:
    """Outbound audio frame for Twilio (payload is base64 mu-law)."""
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": payload},
    })


def clear_message(stream_sid: str) -> str:
    """Tell Twilio to drop any audio it has buffered for playback."""
    return json.dumps({"event": "clear", "streamSid": stream_sid})
