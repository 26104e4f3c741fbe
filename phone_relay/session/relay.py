"""
Duplex relay between one Twilio Media Stream and one Gemini Live session.

Flow:
1. 'start' from Twilio → open Gemini, send setup (state CONNECTING)
2. 'setupComplete' from Gemini → flush buffered caller audio, optional
   greeting kickstart (state ACTIVE)
3. Caller audio: mu-law 8kHz → PCM 16kHz → realtimeInput
4. Gemini audio: PCM 24kHz → mu-law 8kHz → Twilio 'media'
5. Gemini toolCall → ToolDispatcher (own task) → toolResponse
6. 'stop', either socket closing, or a send failure → close (CLOSING → CLOSED)

The Twilio side is consumed by whoever owns the websocket (see main.py);
the Gemini side is consumed by a background task owned by the relay.
"""
import asyncio
import base64
import binascii
import logging
from datetime import date
from typing import AsyncIterator, Callable, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from phone_relay.audio.buffers import PendingAudioBuffer
from phone_relay.audio.pcm import PcmBuffer
from phone_relay.audio.pipeline import ai_chunk_to_telephony_frame, telephony_frame_to_ai_chunk
from phone_relay.audio.resampling import UpsamplePolicy
from phone_relay.config import Settings, settings
from phone_relay.errors import MalformedFrameError
from phone_relay.gemini.client import GeminiLiveClient
from phone_relay.gemini.protocol import ServerContent, ServerMessage, build_setup
from phone_relay.session.observer import CompositeObserver, LoggingObserver, SessionObserver
from phone_relay.session.state import SessionContext, SessionState
from phone_relay.telephony.models import TwilioMessage, clear_message, media_message
from phone_relay.tools.declarations import build_function_declarations
from phone_relay.tools.dispatcher import CREATE_BOOKING, ToolCall, ToolDispatcher, ToolResponse

logger = logging.getLogger(__name__)

# Send failures on the Gemini socket
AI_TRANSPORT_ERRORS = (ConnectionClosed, OSError)
# Send/close failures on the Twilio socket (Starlette raises RuntimeError after close)
TELEPHONY_TRANSPORT_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)

ClientFactory = Callable[[Optional[str]], GeminiLiveClient]


class SessionRelay:
    """
    Owns both connections of one call and moves audio and control messages
    between them.

    No state is shared with other relays except the dispatcher (and through
    it the scheduling backend), which is safe for concurrent use.
    """

    def __init__(
        self,
        telephony: WebSocket,
        dispatcher: ToolDispatcher,
        observer: Optional[SessionObserver] = None,
        client_factory: Optional[ClientFactory] = None,
        config: Optional[Settings] = None,
    ):
        """
        Args:
            telephony: Accepted Twilio websocket (needs send_text and close)
            dispatcher: Tool-call dispatcher shared across sessions
            observer: Receives transcripts, log lines, tool results, bookings
            client_factory: Builds the Gemini client for a stream id
            config: Settings override (defaults to the global settings)
        """
        self.telephony = telephony
        self.dispatcher = dispatcher
        # Observer failures are logged and never reach the call
        self.observer = CompositeObserver([observer or LoggingObserver()])
        self.config = config or settings
        self.client_factory = client_factory or (lambda stream_sid: GeminiLiveClient(stream_sid=stream_sid))

        self.ctx = SessionContext()
        self.ai: Optional[GeminiLiveClient] = None
        self.upsample_policy = UpsamplePolicy(self.config.upsample_policy)
        self.pending_audio = PendingAudioBuffer(maxsize=self.config.preconnect_buffer_frames)

        self._ai_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._tool_tasks: Set[asyncio.Task] = set()
        self._cancelled_tool_ids: Set[str] = set()

        self._handlers = {
            "connected": self._on_connected,
            "start": self._on_start,
            "media": self._on_media,
            "stop": self._on_stop,
            "mark": self._on_mark,
            "dtmf": self._on_dtmf,
        }

    @property
    def state(self) -> SessionState:
        return self.ctx.state

    @property
    def stream_sid(self) -> Optional[str]:
        return self.ctx.stream_sid

    @property
    def is_closed(self) -> bool:
        return self.ctx.state in (SessionState.CLOSING, SessionState.CLOSED)

    # --- Twilio side ---

    async def run(self, messages: AsyncIterator[str]) -> None:
        """Consume Twilio messages until the socket ends or the session closes."""
        try:
            async for raw in messages:
                await self.handle_telephony_message(raw)
                if self.is_closed:
                    break
        finally:
            await self.close("telephony stream ended")

    async def handle_telephony_message(self, raw: str) -> None:
        """Route one Twilio message. Malformed messages are dropped; late ones are ignored."""
        if self.is_closed:
            logger.debug(f"[{self.stream_sid}] Dropping telephony message after close")
            return

        try:
            message = TwilioMessage.model_validate_json(raw)
        except ValidationError as e:
            self._malformed(f"telephony message ({e.error_count()} error(s)): {raw[:100]!r}")
            return

        await self._handlers[message.event](message)

    async def _on_connected(self, message: TwilioMessage) -> None:
        logger.info("Twilio media stream connected")

    async def _on_start(self, message: TwilioMessage) -> None:
        if message.start is None:
            self._malformed("'start' event without start payload")
            return
        if self.state is not SessionState.IDLE:
            logger.warning(f"[{self.stream_sid}] Ignoring duplicate 'start' in state {self.state.value}")
            return

        self.ctx.stream_sid = message.start.streamSid
        self.ctx.call_sid = message.start.callSid
        self.pending_audio.stream_sid = self.ctx.stream_sid
        self.ctx.transition(SessionState.CONNECTING)

        logger.info(f"Stream started: {self.stream_sid}, Call: {self.ctx.call_sid}")
        if message.start.mediaFormat:
            logger.info(f"[{self.stream_sid}] Media format: {message.start.mediaFormat}")
        self.observer.on_log(self.stream_sid, "Stream started", message.start.customParameters or None)

        self._ai_task = asyncio.create_task(self._run_ai_session())
        self._watchdog_task = asyncio.create_task(self._setup_watchdog())

    async def _on_media(self, message: TwilioMessage) -> None:
        if self.state is SessionState.IDLE:
            logger.debug("Ignoring media before 'start'")
            return
        if message.media is None:
            self._malformed("'media' event without media payload")
            return

        self.ctx.frames_received += 1
        try:
            mulaw_bytes = base64.b64decode(message.media.payload, validate=True)
        except binascii.Error as e:
            self._malformed(f"media payload is not valid base64: {e}")
            return

        chunk = telephony_frame_to_ai_chunk(
            mulaw_bytes, policy=self.upsample_policy, gain=self.config.inbound_gain
        )
        if self.state is SessionState.CONNECTING:
            self.pending_audio.append(chunk)
        else:
            await self._send_ai_audio(chunk)

    async def _on_stop(self, message: TwilioMessage) -> None:
        logger.info(f"Stream stopped: {self.stream_sid}")
        await self.close("stop received")

    async def _on_mark(self, message: TwilioMessage) -> None:
        logger.debug(f"[{self.stream_sid}] Mark: {message.mark.name if message.mark else None}")

    async def _on_dtmf(self, message: TwilioMessage) -> None:
        digit = message.dtmf.digit if message.dtmf else None
        logger.info(f"[{self.stream_sid}] DTMF: {digit}")
        self.observer.on_log(self.stream_sid, "DTMF received", digit)

    async def _send_telephony(self, text: str) -> bool:
        if self.is_closed:
            return False
        try:
            await self.telephony.send_text(text)
            return True
        except TELEPHONY_TRANSPORT_ERRORS as e:
            logger.warning(f"[{self.stream_sid}] Telephony send failed: {e}")
            await self.close(f"telephony send failed: {e}")
            return False

    # --- Gemini side ---

    def _build_setup(self) -> dict:
        prompt = self.config.system_prompt.replace("{today}", date.today().isoformat())
        return build_setup(
            model=self.config.gemini_model,
            voice=self.config.gemini_voice,
            system_prompt=prompt,
            function_declarations=build_function_declarations(self.dispatcher.backend.rules.resources),
            transcribe_audio=self.config.transcribe_audio,
        )

    async def _run_ai_session(self) -> None:
        try:
            self.ai = self.client_factory(self.stream_sid)
            await self.ai.connect()
            await self.ai.send(self._build_setup())
            logger.info(f"[{self.stream_sid}] Setup sent to Gemini ({self.config.gemini_model})")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.stream_sid}] Failed to open AI session: {e}")
            self.observer.on_log(self.stream_sid, "AI session setup failed", str(e))
            await self.close(f"AI setup failed: {e}")
            return

        reason = "AI connection closed"
        try:
            async for message in self.ai.messages():
                await self._handle_ai_message(message)
                if self.is_closed:
                    return
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            reason = f"AI connection lost: {e}"
        except Exception as e:
            logger.error(f"[{self.stream_sid}] AI session error: {e}", exc_info=True)
            reason = f"AI session error: {e}"

        await self.close(reason)

    async def _setup_watchdog(self) -> None:
        await asyncio.sleep(self.config.setup_timeout_seconds)
        if self.state in (SessionState.IDLE, SessionState.CONNECTING):
            logger.error(
                f"[{self.stream_sid}] AI session not ready after {self.config.setup_timeout_seconds}s"
            )
            self.observer.on_log(self.stream_sid, "AI session setup timed out")
            await self.close("AI setup timed out")

    async def _handle_ai_message(self, message: ServerMessage) -> None:
        if self.is_closed:
            return

        if message.setup_complete is not None:
            await self._activate()

        if message.server_content is not None:
            await self._handle_server_content(message.server_content)

        if message.tool_call is not None:
            for function_call in message.tool_call.function_calls:
                self._start_tool_call(function_call.to_tool_call())

        if message.tool_call_cancellation is not None:
            self._cancelled_tool_ids.update(message.tool_call_cancellation.ids)
            logger.info(
                f"[{self.stream_sid}] Gemini cancelled tool calls {message.tool_call_cancellation.ids}"
            )

        if message.go_away is not None:
            logger.warning(
                f"[{self.stream_sid}] Gemini will disconnect soon (time left: {message.go_away.time_left})"
            )

    async def _activate(self) -> None:
        if self.state is not SessionState.CONNECTING:
            logger.warning(f"[{self.stream_sid}] Unexpected setupComplete in state {self.state.value}")
            return

        # Frames that arrive while flushing are appended behind the ones being
        # sent, so arrival order is kept until the state flips.
        flushed = 0
        while len(self.pending_audio):
            await self._send_ai_audio(self.pending_audio.popleft())
            flushed += 1
            if self.is_closed:
                return

        self.ctx.transition(SessionState.ACTIVE)
        if self._watchdog_task:
            self._watchdog_task.cancel()
        logger.info(f"[{self.stream_sid}] AI session active (flushed {flushed} buffered frame(s))")
        self.observer.on_log(self.stream_sid, "AI session active")

        if self.config.kickstart_enabled:
            try:
                await self.ai.send_client_content(self.config.kickstart_text)
                logger.info(f"[{self.stream_sid}] Kickstart sent")
            except AI_TRANSPORT_ERRORS as e:
                await self.close(f"AI send failed: {e}")

    async def _send_ai_audio(self, chunk: PcmBuffer) -> None:
        if self.ai is None:
            return
        try:
            await self.ai.send_audio(chunk)
            self.ctx.frames_forwarded += 1
        except AI_TRANSPORT_ERRORS as e:
            logger.warning(f"[{self.stream_sid}] AI send failed: {e}")
            await self.close(f"AI send failed: {e}")

    async def _handle_server_content(self, content: ServerContent) -> None:
        if content.interrupted:
            logger.info(f"[{self.stream_sid}] Caller interrupted, clearing Twilio playback")
            await self._send_telephony(clear_message(self.stream_sid))

        if content.model_turn is not None:
            for part in content.model_turn.parts:
                if part.text:
                    self.observer.on_transcript(self.stream_sid, "ai", part.text)
                if part.inline_data is not None and part.inline_data.data:
                    await self._forward_ai_audio(part.inline_data.data)
                if self.is_closed:
                    return

        if content.input_transcription is not None and content.input_transcription.text:
            self.observer.on_transcript(self.stream_sid, "caller", content.input_transcription.text)
        if content.output_transcription is not None and content.output_transcription.text:
            self.observer.on_transcript(self.stream_sid, "ai", content.output_transcription.text)

    async def _forward_ai_audio(self, payload: str) -> None:
        try:
            frame = ai_chunk_to_telephony_frame(base64.b64decode(payload, validate=True))
        except (binascii.Error, MalformedFrameError) as e:
            self._malformed(f"AI audio part: {e}")
            return
        if not frame:
            return
        encoded = base64.b64encode(frame).decode("utf-8")
        if await self._send_telephony(media_message(self.stream_sid, encoded)):
            self.ctx.frames_sent += 1

    # --- tool calls ---

    def _start_tool_call(self, call: ToolCall) -> None:
        self.ctx.tool_calls += 1
        task = asyncio.create_task(self._run_tool_call(call))
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool_call(self, call: ToolCall) -> None:
        response = await self.dispatcher.dispatch(call)
        if response.is_error:
            self.ctx.tool_errors += 1

        await self._deliver_tool_response(call, response)

        self.observer.on_tool_result(self.stream_sid, response)
        if call.name == CREATE_BOOKING and response.result.get("success"):
            self.observer.on_booking(self.stream_sid, {**call.arguments, **response.result})

    async def _deliver_tool_response(self, call: ToolCall, response: ToolResponse) -> None:
        if call.id in self._cancelled_tool_ids:
            self._cancelled_tool_ids.discard(call.id)
            logger.info(f"[{self.stream_sid}] Not answering {call.name} (id={call.id}): cancelled by Gemini")
            return
        if self.state is SessionState.CLOSED or self.ai is None or not self.ai.is_open:
            logger.info(f"[{self.stream_sid}] Discarding response for {call.name} (id={call.id}): session closed")
            return
        try:
            await self.ai.send_tool_responses([response])
            logger.info(f"[{self.stream_sid}] Sent tool response for {call.name} (id={call.id})")
        except AI_TRANSPORT_ERRORS as e:
            logger.warning(f"[{self.stream_sid}] Could not deliver tool response {call.id}: {e}")

    # --- teardown ---

    async def close(self, reason: str = "closed") -> None:
        """
        Tear the session down. Safe to call more than once and from any task.

        In-flight tool calls get tool_drain_seconds to finish and reply while
        the Gemini socket is still open; whatever is left is cancelled.
        """
        if self.is_closed:
            return
        self.ctx.close_reason = reason
        self.ctx.transition(SessionState.CLOSING)
        logger.info(f"[{self.stream_sid}] Closing session: {reason}")

        current = asyncio.current_task()
        if self._watchdog_task is not None and self._watchdog_task is not current:
            self._watchdog_task.cancel()

        tool_tasks = [t for t in self._tool_tasks if t is not current]
        if tool_tasks:
            _, unfinished = await asyncio.wait(tool_tasks, timeout=self.config.tool_drain_seconds)
            for task in unfinished:
                logger.warning(f"[{self.stream_sid}] Abandoning in-flight tool call")
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        if self._ai_task is not None and self._ai_task is not current and not self._ai_task.done():
            self._ai_task.cancel()
            await asyncio.gather(self._ai_task, return_exceptions=True)

        if self.ai is not None:
            await self.ai.close()

        try:
            await self.telephony.close()
        except TELEPHONY_TRANSPORT_ERRORS as e:
            logger.debug(f"[{self.stream_sid}] Telephony socket already closed: {e}")

        self.ctx.frames_dropped += self.pending_audio.dropped
        self.pending_audio.clear()
        self.ctx.transition(SessionState.CLOSED)
        self.observer.on_log(self.stream_sid, "Session closed", reason)

    def _malformed(self, what: str) -> None:
        self.ctx.frames_dropped += 1
        logger.warning(f"[{self.stream_sid}] Dropping malformed {what}")
