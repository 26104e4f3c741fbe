"""
Gemini Live client over a raw websocket.

One client per call. Sends JSON client messages and yields parsed server
messages; malformed server frames are logged and skipped so one bad message
never ends the session.
"""

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Dict, Iterable, Optional

import websockets
from pydantic import ValidationError
from websockets.exceptions import WebSocketException

from phone_relay.audio.pcm import PcmBuffer
from phone_relay.config import settings
from phone_relay.errors import SessionSetupError
from phone_relay.gemini.protocol import (
    ServerMessage,
    build_client_content,
    build_realtime_input,
    build_tool_response,
)
from phone_relay.tools.dispatcher import ToolResponse

logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT = 10  # seconds
WS_MAX_SIZE = 16 * 1024 * 1024  # large enough for long audio parts
WS_PING_INTERVAL = 20


class GeminiLiveClient:
    """
    Async client for one Gemini Live session.

    Usage:
        client = GeminiLiveClient()
        await client.connect()
        await client.send(build_setup(...))
        async for message in client.messages():
            ...
        await client.close()
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        stream_sid: Optional[str] = None,
    ):
        self.api_key = api_key or settings.gemini_api_key
        self.url = url or settings.gemini_ws_url
        self.stream_sid = stream_sid
        self.ws = None

    @property
    def is_open(self) -> bool:
        return self.ws is not None

    async def connect(self) -> None:
        """
        Open the websocket.

        Raises:
            SessionSetupError: If no API key is configured, the handshake is
                rejected, or it takes longer than CONNECTION_TIMEOUT
        """
        if not self.api_key:
            raise SessionSetupError("GEMINI_API_KEY is not configured")

        logger.info(f"[{self.stream_sid}] Connecting to Gemini Live")
        try:
            self.ws = await asyncio.wait_for(
                websockets.connect(
                    f"{self.url}?key={self.api_key}",
                    max_size=WS_MAX_SIZE,
                    ping_interval=WS_PING_INTERVAL,
                    compression=None,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
        except asyncio.TimeoutError as e:
            raise SessionSetupError(f"Gemini handshake timed out after {CONNECTION_TIMEOUT}s") from e
        except (WebSocketException, OSError) as e:
            raise SessionSetupError(f"Gemini handshake failed: {e}") from e
        logger.info(f"[{self.stream_sid}] Gemini Live websocket open")

    async def send(self, message: Dict[str, Any]) -> None:
        """
        Send one client message.

        Raises:
            ConnectionError: If connect() was never called or close() already ran
            websockets.exceptions.ConnectionClosed: If the socket is gone
        """
        if self.ws is None:
            raise ConnectionError("Gemini websocket is not open")
        await self.ws.send(json.dumps(message))

    async def send_client_content(self, text: str) -> None:
        await self.send(build_client_content(text))

    async def send_audio(self, chunk: PcmBuffer) -> None:
        await self.send(build_realtime_input([chunk]))

    async def send_tool_responses(self, responses: Iterable[ToolResponse]) -> None:
        await self.send(build_tool_response(responses))

    async def messages(self) -> AsyncGenerator[ServerMessage, None]:
        """
        Yield server messages until the connection closes.

        Gemini sends JSON in both text and binary frames. Frames that fail to
        parse are dropped with a warning.

        Raises:
            websockets.exceptions.ConnectionClosedError: On abnormal closure
        """
        if self.ws is None:
            return
        async for raw in self.ws:
            try:
                message = ServerMessage.model_validate_json(raw)
            except ValidationError as e:
                logger.warning(
                    f"[{self.stream_sid}] Dropping malformed Gemini message "
                    f"({e.error_count()} error(s)): {raw[:100]!r}"
                )
                continue
            yield message

    async def close(self) -> None:
        ws, self.ws = self.ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.warning(f"[{self.stream_sid}] Error closing Gemini websocket: {e}")
        logger.info(f"[{self.stream_sid}] Gemini Live websocket closed")
