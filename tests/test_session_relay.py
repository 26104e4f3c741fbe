"""Tests for the Twilio ↔ Gemini session relay."""

import asyncio
import base64
import json
from datetime import date
from unittest.mock import AsyncMock

import numpy as np
import pytest

from phone_relay.audio.pcm import PcmBuffer
from phone_relay.audio.pipeline import telephony_frame_to_ai_chunk
from phone_relay.config import Settings
from phone_relay.errors import SessionSetupError
from phone_relay.gemini.protocol import (
    ServerMessage,
    build_client_content,
    build_realtime_input,
    build_tool_response,
)
from phone_relay.scheduling import BusinessRules, InMemorySchedulingBackend
from phone_relay.session import SessionObserver, SessionRelay, SessionState
from phone_relay.tools import ToolDispatcher


class FakeGeminiClient:
    """Stands in for GeminiLiveClient; server messages are pushed by the test."""

    def __init__(self, connect_error=None):
        self.connect_error = connect_error
        self.sent = []
        self.incoming = asyncio.Queue()
        self.connected = False
        self.closed = False

    @property
    def is_open(self):
        return self.connected and not self.closed

    async def connect(self):
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    async def send(self, message):
        if not self.is_open:
            raise ConnectionError("Gemini websocket is not open")
        self.sent.append(message)

    async def send_client_content(self, text):
        await self.send(build_client_content(text))

    async def send_audio(self, chunk):
        await self.send(build_realtime_input([chunk]))

    async def send_tool_responses(self, responses):
        await self.send(build_tool_response(responses))

    async def messages(self):
        while True:
            item = await self.incoming.get()
            if item is None:
                return
            yield ServerMessage.model_validate(item)

    async def close(self):
        self.closed = True

    def push(self, message):
        self.incoming.put_nowait(message)

    def hang_up(self):
        self.incoming.put_nowait(None)

    def sent_kinds(self):
        return [next(iter(m)) for m in self.sent]


class FakeTelephony:
    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_text(self, text):
        if self.closed:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(json.loads(text))

    async def close(self, code=1000):
        self.closed = True


class RecordingObserver(SessionObserver):
    def __init__(self):
        self.transcripts = []
        self.tool_results = []
        self.bookings = []

    def on_transcript(self, stream_sid, speaker, text):
        self.transcripts.append((speaker, text))

    def on_tool_result(self, stream_sid, response):
        self.tool_results.append(response)

    def on_booking(self, stream_sid, booking):
        self.bookings.append(booking)


class BrokenObserver(SessionObserver):
    """A dashboard that is down: every hook raises."""

    def _fail(self, *args):
        raise RuntimeError("dashboard down")

    on_transcript = on_log = on_tool_result = on_booking = _fail


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _settings(**overrides):
    values = dict(
        gemini_api_key="test-key",
        gemini_model="models/test-model",
        system_prompt="Receptionist. Today is {today}.",
        kickstart_enabled=True,
        kickstart_text="Start now. Greet the caller.",
        preconnect_buffer_frames=3,
        setup_timeout_seconds=5.0,
        tool_drain_seconds=1.0,
    )
    values.update(overrides)
    return Settings(**values)


def _backend():
    rules = BusinessRules(calendar_ids={"Mohamed": "primary", "Jason": "primary"})
    return InMemorySchedulingBackend(rules)


def _relay(fake=None, backend=None, observer=None, **overrides):
    fake = fake or FakeGeminiClient()
    telephony = FakeTelephony()
    relay = SessionRelay(
        telephony,
        ToolDispatcher(backend or _backend()),
        observer=observer,
        client_factory=lambda stream_sid: fake,
        config=_settings(**overrides),
    )
    return relay, fake, telephony


def start_event(stream_sid="S1"):
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "streamSid": stream_sid,
        "start": {
            "streamSid": stream_sid,
            "callSid": "CA123",
            "tracks": ["inbound"],
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
        },
    })


def media_event(payload=b"\xff" * 160, stream_sid="S1"):
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {"track": "inbound", "chunk": "1", "timestamp": "20",
                  "payload": base64.b64encode(payload).decode()},
    })


def stop_event(stream_sid="S1"):
    return json.dumps({"event": "stop", "streamSid": stream_sid, "stop": {"callSid": "CA123"}})


def audio_part(n_samples=720):
    samples = (np.sin(np.arange(n_samples) / 5.0) * 8000).astype(np.int16)
    data = PcmBuffer(samples, 24000).to_base64()
    return {"serverContent": {"modelTurn": {"parts": [
        {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": data}}
    ]}}}


async def _activate(relay, fake):
    await relay.handle_telephony_message(start_event())
    await wait_until(lambda: "setup" in fake.sent_kinds())
    fake.push({"setupComplete": {}})
    await wait_until(lambda: relay.state is SessionState.ACTIVE)


class TestBeforeStart:
    @pytest.mark.asyncio
    async def test_media_without_start_is_never_forwarded(self):
        created = []
        relay = SessionRelay(
            FakeTelephony(),
            ToolDispatcher(_backend()),
            client_factory=lambda sid: created.append(sid) or FakeGeminiClient(),
            config=_settings(),
        )

        for _ in range(5):
            await relay.handle_telephony_message(media_event())
        await asyncio.sleep(0.01)

        assert relay.state is SessionState.IDLE
        assert created == []
        assert relay.ctx.frames_forwarded == 0

    @pytest.mark.asyncio
    async def test_connected_event_keeps_idle(self):
        relay, fake, _ = _relay()
        await relay.handle_telephony_message(json.dumps({"event": "connected", "protocol": "Call"}))
        assert relay.state is SessionState.IDLE


class TestSessionSetup:
    @pytest.mark.asyncio
    async def test_start_connects_and_sends_setup_with_tools(self):
        relay, fake, _ = _relay()

        await relay.handle_telephony_message(start_event("S1"))
        assert relay.state is SessionState.CONNECTING
        assert relay.stream_sid == "S1"
        assert relay.ctx.call_sid == "CA123"

        await wait_until(lambda: fake.sent)
        setup = fake.sent[0]["setup"]
        assert setup["model"] == "models/test-model"
        assert setup["systemInstruction"]["parts"][0]["text"] == (
            f"Receptionist. Today is {date.today().isoformat()}."
        )
        declarations = setup["tools"][0]["functionDeclarations"]
        assert [d["name"] for d in declarations] == ["CheckAvailability", "CreateBooking"]
        assert declarations[0]["parameters"]["properties"]["barber"]["enum"] == ["Mohamed", "Jason"]

        fake.push({"setupComplete": {}})
        await wait_until(lambda: relay.state is SessionState.ACTIVE)
        await wait_until(lambda: len(fake.sent) == 2)
        assert fake.sent[1] == build_client_content("Start now. Greet the caller.")

        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_kickstart_can_be_disabled(self):
        relay, fake, _ = _relay(kickstart_enabled=False)
        await _activate(relay, fake)
        await asyncio.sleep(0.01)

        assert fake.sent_kinds() == ["setup"]
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_audio_before_ready_is_flushed_in_order(self):
        relay, fake, _ = _relay()
        frames = [bytes([code]) * 160 for code in (0x90, 0xA0, 0xB0, 0xC0, 0xD0)]

        await relay.handle_telephony_message(start_event())
        for frame in frames:
            await relay.handle_telephony_message(media_event(frame))
        assert relay.state is SessionState.CONNECTING

        await wait_until(lambda: "setup" in fake.sent_kinds())
        fake.push({"setupComplete": {}})
        await wait_until(lambda: "clientContent" in fake.sent_kinds())

        # Buffer holds 3 frames, so the two oldest were dropped
        assert fake.sent_kinds() == ["setup", "realtimeInput", "realtimeInput", "realtimeInput", "clientContent"]
        flushed = [m["realtimeInput"]["mediaChunks"][0]["data"] for m in fake.sent[1:4]]
        assert flushed == [telephony_frame_to_ai_chunk(f).to_base64() for f in frames[2:]]

        await relay.close("test over")
        assert relay.ctx.frames_dropped == 2

    @pytest.mark.asyncio
    async def test_connect_failure_closes_telephony(self):
        relay, fake, telephony = _relay(fake=FakeGeminiClient(SessionSetupError("handshake failed")))

        await relay.handle_telephony_message(start_event())
        await wait_until(lambda: relay.state is SessionState.CLOSED)

        assert telephony.closed
        assert "handshake failed" in relay.ctx.close_reason

    @pytest.mark.asyncio
    async def test_setup_timeout_closes_session(self):
        relay, fake, telephony = _relay(setup_timeout_seconds=0.05)

        await relay.handle_telephony_message(start_event())
        await wait_until(lambda: relay.state is SessionState.CLOSED)

        assert telephony.closed
        assert fake.closed
        assert relay.ctx.close_reason == "AI setup timed out"

    @pytest.mark.asyncio
    async def test_duplicate_start_is_ignored(self):
        relay, fake, _ = _relay()
        await relay.handle_telephony_message(start_event("S1"))
        await relay.handle_telephony_message(start_event("S2"))

        assert relay.stream_sid == "S1"
        await relay.close("test over")


class TestAudioRelay:
    @pytest.mark.asyncio
    async def test_caller_audio_forwarded_at_16k(self):
        relay, fake, _ = _relay(kickstart_enabled=False)
        await _activate(relay, fake)

        await relay.handle_telephony_message(media_event(b"\xff" * 160))

        chunk = fake.sent[-1]["realtimeInput"]["mediaChunks"][0]
        assert chunk["mimeType"] == "audio/pcm;rate=16000"
        assert len(base64.b64decode(chunk["data"])) == 640
        assert relay.ctx.frames_forwarded == 1
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_ai_audio_sent_to_twilio(self):
        relay, fake, telephony = _relay()
        await _activate(relay, fake)

        fake.push(audio_part(720))
        await wait_until(lambda: telephony.sent)

        frame = telephony.sent[0]
        assert frame["event"] == "media"
        assert frame["streamSid"] == "S1"
        assert len(base64.b64decode(frame["media"]["payload"])) == 240
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_misaligned_ai_audio_is_dropped(self):
        relay, fake, telephony = _relay()
        await _activate(relay, fake)

        bad = base64.b64encode(b"\x00" * 7).decode()
        fake.push({"serverContent": {"modelTurn": {"parts": [{"inlineData": {"data": bad}}]}}})
        fake.push(audio_part(6))
        await wait_until(lambda: telephony.sent)

        assert len(telephony.sent) == 1
        assert len(base64.b64decode(telephony.sent[0]["media"]["payload"])) == 2
        assert relay.state is SessionState.ACTIVE
        assert relay.ctx.frames_dropped == 1
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_interruption_clears_twilio_playback(self):
        relay, fake, telephony = _relay()
        await _activate(relay, fake)

        fake.push({"serverContent": {"interrupted": True}})
        await wait_until(lambda: telephony.sent)

        assert telephony.sent[0] == {"event": "clear", "streamSid": "S1"}
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_transcripts_reach_observer(self):
        observer = RecordingObserver()
        relay, fake, _ = _relay(observer=observer)
        await _activate(relay, fake)

        fake.push({"serverContent": {"inputTranscription": {"text": "I need a haircut"}}})
        fake.push({"serverContent": {"outputTranscription": {"text": "Which barber?"}}})
        await wait_until(lambda: len(observer.transcripts) == 2)

        assert observer.transcripts == [("caller", "I need a haircut"), ("ai", "Which barber?")]
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_end_call(self):
        relay, fake, telephony = _relay(observer=BrokenObserver())
        await _activate(relay, fake)

        fake.push({"serverContent": {"outputTranscription": {"text": "Which barber?"}}})
        fake.push(audio_part(720))
        await wait_until(lambda: telephony.sent)

        assert relay.state is SessionState.ACTIVE
        assert telephony.sent[0]["event"] == "media"
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_malformed_telephony_messages_are_dropped(self):
        relay, fake, _ = _relay(kickstart_enabled=False)
        await _activate(relay, fake)

        await relay.handle_telephony_message("not json at all")
        await relay.handle_telephony_message(json.dumps({"event": "unknown"}))
        await relay.handle_telephony_message(json.dumps({"event": "media", "media": {"payload": "@@@"}}))

        assert relay.state is SessionState.ACTIVE
        assert fake.sent_kinds() == ["setup"]
        assert relay.ctx.frames_dropped == 3
        await relay.close("test over")


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_tool_call_answered_with_same_id(self):
        observer = RecordingObserver()
        relay, fake, _ = _relay(observer=observer)
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "c1", "name": "CheckAvailability", "args": {"date": "2025-01-06", "barber": "Jason"}}
        ]}})
        await wait_until(lambda: "toolResponse" in fake.sent_kinds())

        response = fake.sent[-1]["toolResponse"]["functionResponses"][0]
        assert response["id"] == "c1"
        assert response["name"] == "CheckAvailability"
        assert "09:00" in response["response"]["available_slots"]
        assert [r.id for r in observer.tool_results] == ["c1"]
        assert relay.ctx.tool_calls == 1
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_failing_tool_still_gets_response(self):
        backend = _backend()
        backend.create_booking = AsyncMock(side_effect=RuntimeError("calendar down"))
        relay, fake, _ = _relay(backend=backend)
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "t1", "name": "CreateBooking", "args": {
                "startTime": "2025-01-06T10:00:00", "barber": "Jason",
                "service": "haircut", "clientName": "Ivan",
            }}
        ]}})
        await wait_until(lambda: "toolResponse" in fake.sent_kinds())

        response = fake.sent[-1]["toolResponse"]["functionResponses"][0]
        assert response["id"] == "t1"
        assert "error" in response["response"]
        assert relay.ctx.tool_errors == 1
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_successful_booking_notifies_observer(self):
        observer = RecordingObserver()
        relay, fake, _ = _relay(observer=observer)
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "b1", "name": "CreateBooking", "args": {
                "startTime": "2025-01-06T10:00:00", "barber": "Jason",
                "service": "haircut", "clientName": "Ivan",
            }}
        ]}})
        await wait_until(lambda: observer.bookings)

        assert observer.bookings[0]["clientName"] == "Ivan"
        assert observer.bookings[0]["success"] is True
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_failing_observer_still_gets_tool_response(self):
        relay, fake, _ = _relay(observer=BrokenObserver())
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "c1", "name": "CheckAvailability", "args": {"date": "2025-01-06", "barber": "Jason"}}
        ]}})
        await wait_until(lambda: "toolResponse" in fake.sent_kinds())

        assert fake.sent[-1]["toolResponse"]["functionResponses"][0]["id"] == "c1"
        assert relay.state is SessionState.ACTIVE
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_bad_call_does_not_block_its_siblings(self):
        relay, fake, _ = _relay()
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "c1", "name": "CheckAvailability", "args": {"date": "2025-01-06", "barber": "Jason"}},
            {"id": "c2", "name": "CheckAvailability", "args": None},
        ]}})
        await wait_until(lambda: fake.sent_kinds().count("toolResponse") == 2)

        responses = {
            m["toolResponse"]["functionResponses"][0]["id"]: m["toolResponse"]["functionResponses"][0]["response"]
            for m in fake.sent if "toolResponse" in m
        }
        assert "available_slots" in responses["c1"]
        assert "error" in responses["c2"]
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_cancelled_call_is_not_answered(self):
        release = asyncio.Event()
        backend = _backend()

        async def slow_availability(day, resource):
            await release.wait()
            return {"available_slots": []}

        backend.check_availability = slow_availability
        relay, fake, _ = _relay(backend=backend)
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "c1", "name": "CheckAvailability", "args": {"date": "2025-01-06", "barber": "Jason"}},
            {"id": "c2", "name": "CheckAvailability", "args": {"date": "2025-01-07", "barber": "Jason"}},
        ]}})
        fake.push({"toolCallCancellation": {"ids": ["c1"]}})
        await wait_until(lambda: relay._cancelled_tool_ids == {"c1"})

        release.set()
        await wait_until(lambda: "toolResponse" in fake.sent_kinds())
        await wait_until(lambda: not relay._tool_tasks)

        answered = [m["toolResponse"]["functionResponses"][0]["id"] for m in fake.sent if "toolResponse" in m]
        assert answered == ["c2"]
        await relay.close("test over")

    @pytest.mark.asyncio
    async def test_audio_keeps_flowing_while_tool_runs(self):
        release = asyncio.Event()
        backend = _backend()

        async def slow_availability(day, resource):
            await release.wait()
            return {"available_slots": []}

        backend.check_availability = slow_availability
        relay, fake, telephony = _relay(backend=backend)
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "c1", "name": "CheckAvailability", "args": {"date": "2025-01-06", "barber": "Jason"}}
        ]}})
        fake.push(audio_part(720))
        await wait_until(lambda: telephony.sent)
        assert "toolResponse" not in fake.sent_kinds()

        release.set()
        await wait_until(lambda: "toolResponse" in fake.sent_kinds())
        await relay.close("test over")


class TestTeardown:
    @pytest.mark.asyncio
    async def test_stop_while_tool_in_flight_abandons_call(self):
        started = asyncio.Event()
        backend = _backend()

        async def hanging_booking(**kwargs):
            started.set()
            await asyncio.sleep(10)

        backend.create_booking = hanging_booking
        relay, fake, telephony = _relay(backend=backend, tool_drain_seconds=0.05)
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "t1", "name": "CreateBooking", "args": {
                "startTime": "2025-01-06T10:00:00", "barber": "Jason",
                "service": "haircut", "clientName": "Ivan",
            }}
        ]}})
        await started.wait()

        await relay.handle_telephony_message(stop_event())

        assert relay.state is SessionState.CLOSED
        assert telephony.closed
        assert fake.closed
        assert "toolResponse" not in fake.sent_kinds()

    @pytest.mark.asyncio
    async def test_stop_while_tool_in_flight_lets_it_finish(self):
        started = asyncio.Event()
        backend = _backend()

        async def quick_booking(**kwargs):
            started.set()
            await asyncio.sleep(0.02)
            return {"success": True}

        backend.create_booking = quick_booking
        relay, fake, telephony = _relay(backend=backend, tool_drain_seconds=1.0)
        await _activate(relay, fake)

        fake.push({"toolCall": {"functionCalls": [
            {"id": "t1", "name": "CreateBooking", "args": {
                "startTime": "2025-01-06T10:00:00", "barber": "Jason",
                "service": "haircut", "clientName": "Ivan",
            }}
        ]}})
        await started.wait()

        await relay.handle_telephony_message(stop_event())

        assert relay.state is SessionState.CLOSED
        assert "toolResponse" in fake.sent_kinds()

    @pytest.mark.asyncio
    async def test_ai_hang_up_closes_telephony(self):
        relay, fake, telephony = _relay()
        await _activate(relay, fake)

        fake.hang_up()
        await wait_until(lambda: relay.state is SessionState.CLOSED)

        assert telephony.closed
        assert relay.ctx.close_reason == "AI connection closed"

    @pytest.mark.asyncio
    async def test_messages_after_close_are_ignored(self):
        relay, fake, _ = _relay()
        await _activate(relay, fake)
        await relay.handle_telephony_message(stop_event())
        sent_before = list(fake.sent)

        await relay.handle_telephony_message(media_event())
        await relay.handle_telephony_message(stop_event())

        assert relay.state is SessionState.CLOSED
        assert fake.sent == sent_before

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        relay, fake, _ = _relay()
        await _activate(relay, fake)

        await asyncio.gather(relay.close("first"), relay.close("second"))

        assert relay.state is SessionState.CLOSED
        assert relay.ctx.close_reason == "first"

    @pytest.mark.asyncio
    async def test_telephony_send_failure_closes_session(self):
        relay, fake, telephony = _relay()
        await _activate(relay, fake)

        async def broken_send(text):
            raise RuntimeError("socket gone")

        telephony.send_text = broken_send
        fake.push(audio_part(720))
        await wait_until(lambda: relay.state is SessionState.CLOSED)

        assert "telephony send failed" in relay.ctx.close_reason

    @pytest.mark.asyncio
    async def test_run_closes_when_stream_ends(self):
        relay, fake, telephony = _relay()

        async def twilio_stream():
            yield json.dumps({"event": "connected"})
            yield start_event()
            yield media_event()

        await relay.run(twilio_stream())

        assert relay.state is SessionState.CLOSED
        assert telephony.closed
