"""Tests for session state tracking and observers."""

import pytest
from unittest.mock import MagicMock

from phone_relay.session import (
    CompositeObserver,
    SessionContext,
    SessionObserver,
    SessionRegistry,
    SessionState,
)
from phone_relay.tools import ToolResponse


class TestSessionContext:
    def test_happy_path_transitions(self):
        ctx = SessionContext(stream_sid="S1")

        for state in (SessionState.CONNECTING, SessionState.ACTIVE, SessionState.CLOSING, SessionState.CLOSED):
            ctx.transition(state)

        assert ctx.state is SessionState.CLOSED
        assert ctx.started_at is not None
        assert ctx.active_at is not None
        assert ctx.closed_at is not None
        assert ctx.duration_seconds >= 0

    def test_idle_can_close_directly(self):
        ctx = SessionContext()
        ctx.transition(SessionState.CLOSING)
        ctx.transition(SessionState.CLOSED)
        assert ctx.duration_seconds is None

    @pytest.mark.parametrize("start, target", [
        (SessionState.IDLE, SessionState.ACTIVE),
        (SessionState.ACTIVE, SessionState.CONNECTING),
        (SessionState.CLOSED, SessionState.IDLE),
        (SessionState.CLOSING, SessionState.ACTIVE),
    ])
    def test_invalid_transitions_raise(self, start, target):
        ctx = SessionContext(state=start)
        with pytest.raises(ValueError):
            ctx.transition(target)


class TestSessionRegistry:
    def test_register_and_unregister(self):
        registry = SessionRegistry()
        ctx = SessionContext(stream_sid="S1")

        key = registry.register(ctx)
        assert registry.get_session_count() == 1
        assert registry.get_by_stream("S1") is ctx

        assert registry.unregister(key) is ctx
        assert registry.get_session_count() == 0
        assert registry.get_by_stream("S1") is None

    def test_unregister_unknown_key(self):
        assert SessionRegistry().unregister(12345) is None

    def test_active_sessions_only_counts_relaying(self):
        registry = SessionRegistry()
        idle = SessionContext()
        active = SessionContext(state=SessionState.ACTIVE)
        registry.register(idle)
        active_key = registry.register(active)

        assert list(registry.get_active_sessions()) == [active_key]


class TestCompositeObserver:
    def test_fans_out_to_every_observer(self):
        first, second = MagicMock(spec=SessionObserver), MagicMock(spec=SessionObserver)
        composite = CompositeObserver([first, second])

        composite.on_transcript("S1", "caller", "hello")
        composite.on_booking("S1", {"success": True})

        first.on_transcript.assert_called_once_with("S1", "caller", "hello")
        second.on_booking.assert_called_once_with("S1", {"success": True})

    def test_failing_observer_does_not_block_others(self):
        broken = MagicMock(spec=SessionObserver)
        broken.on_tool_result.side_effect = RuntimeError("dashboard offline")
        healthy = MagicMock(spec=SessionObserver)
        response = ToolResponse("t1", "CheckAvailability", {"available_slots": []})

        CompositeObserver([broken, healthy]).on_tool_result("S1", response)

        healthy.on_tool_result.assert_called_once_with("S1", response)
