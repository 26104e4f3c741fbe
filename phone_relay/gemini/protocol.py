"""
Gemini Live (BidiGenerateContent) wire messages.

Client messages are built as plain dicts ready for json.dumps.
Server messages are parsed into pydantic models that accept both the
camelCase field names of the JSON API and the snake_case names some API
versions and SDKs use.
"""
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from phone_relay.audio.pcm import PcmBuffer
from phone_relay.tools.dispatcher import ToolCall, ToolResponse


class _ServerModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )


class InlineData(_ServerModel):
    mime_type: Optional[str] = None
    data: str = ""


class Part(_ServerModel):
    text: Optional[str] = None
    inline_data: Optional[InlineData] = None


class ModelTurn(_ServerModel):
    role: Optional[str] = None
    parts: List[Part] = []


class Transcription(_ServerModel):
    text: Optional[str] = None
    finished: Optional[bool] = None


class ServerContent(_ServerModel):
    model_turn: Optional[ModelTurn] = None
    turn_complete: bool = False
    generation_complete: bool = False
    interrupted: bool = False
    input_transcription: Optional[Transcription] = None
    output_transcription: Optional[Transcription] = None


class FunctionCall(_ServerModel):
    # Missing name or null args still parse; the dispatcher answers with an error
    id: str = ""
    name: str = ""
    args: Optional[Dict[str, Any]] = None

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=dict(self.args or {}))


class ToolCallMessage(_ServerModel):
    function_calls: List[FunctionCall] = []


class ToolCallCancellation(_ServerModel):
    ids: List[str] = []


class GoAway(_ServerModel):
    time_left: Optional[str] = None


class ServerMessage(_ServerModel):
    setup_complete: Optional[Dict[str, Any]] = None
    server_content: Optional[ServerContent] = None
    tool_call: Optional[ToolCallMessage] = None
    tool_call_cancellation: Optional[ToolCallCancellation] = None
    go_away: Optional[GoAway] = None


# --- client → server ---


def build_setup(
    model: str,
    voice: str,
    system_prompt: str,
    function_declarations: Sequence[Dict[str, Any]] = (),
    response_modalities: Sequence[str] = ("AUDIO",),
    transcribe_audio: bool = True,
) -> Dict[str, Any]:
    """
    Session setup: the first message on a new connection.

    Args:
        model: Model resource name (e.g. "models/gemini-2.0-flash-exp")
        voice: Prebuilt voice name
        system_prompt: System instruction text
        function_declarations: Tool schemas the model may call
        response_modalities: "AUDIO" and/or "TEXT"
        transcribe_audio: Ask the server for input/output transcriptions
    """
    setup: Dict[str, Any] = {
        "model": model,
        "generationConfig": {
            "responseModalities": list(response_modalities),
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}
            },
        },
        "systemInstruction": {"parts": [{"text": system_prompt}]},
    }
    if function_declarations:
        setup["tools"] = [{"functionDeclarations": list(function_declarations)}]
    if transcribe_audio:
        setup["inputAudioTranscription"] = {}
        setup["outputAudioTranscription"] = {}
    return {"setup": setup}


def build_client_content(text: str, role: str = "user", turn_complete: bool = True) -> Dict[str, Any]:
    """A single text turn, e.g. the greeting kickstart."""
    return {
        "clientContent": {
            "turns": [{"role": role, "parts": [{"text": text}]}],
            "turnComplete": turn_complete,
        }
    }


def build_realtime_input(chunks: Iterable[PcmBuffer]) -> Dict[str, Any]:
    """Realtime audio input; each chunk carries its own rate in the MIME type."""
    return {
        "realtimeInput": {
            "mediaChunks": [
                {"mimeType": chunk.mime_type, "data": chunk.to_base64()}
                for chunk in chunks
            ]
        }
    }


def build_tool_response(responses: Iterable[ToolResponse]) -> Dict[str, Any]:
    return {
        "toolResponse": {
            "functionResponses": [
                {"id": r.id, "name": r.name, "response": r.result}
                for r in responses
            ]
        }
    }
