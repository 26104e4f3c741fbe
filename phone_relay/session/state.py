"""
Session state tracking for the call relay lifecycle.

States:
- IDLE: Telephony websocket accepted, no stream yet, no AI connection
- CONNECTING: 'start' received, AI session being opened and set up
- ACTIVE: AI session ready, audio and tool calls flowing both ways
- CLOSING: Either side ended or failed, connections being released
- CLOSED: Both connections released; late frames are dropped
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict
import logging

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Relay lifecycle states"""
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


# Allowed transitions; anything else is a bug in the relay
_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSING},
    SessionState.CONNECTING: {SessionState.ACTIVE, SessionState.CLOSING},
    SessionState.ACTIVE: {SessionState.CLOSING},
    SessionState.CLOSING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


@dataclass
class SessionContext:
    """
    Context for a single relayed call.

    Tracks state, identifiers, and counters throughout the session lifecycle.
    """
    state: SessionState = SessionState.IDLE
    stream_sid: Optional[str] = None
    call_sid: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    active_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    # Audio tracking
    frames_received: int = 0
    frames_forwarded: int = 0
    frames_sent: int = 0
    frames_dropped: int = 0

    # Tool tracking
    tool_calls: int = 0
    tool_errors: int = 0

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Invalid session transition {self.state.value} → {new_state.value}")
        logger.debug(f"[{self.stream_sid}] {self.state.value} → {new_state.value}")
        self.state = new_state
        now = datetime.now()
        if new_state is SessionState.CONNECTING:
            self.started_at = now
        elif new_state is SessionState.ACTIVE:
            self.active_at = now
        elif new_state is SessionState.CLOSED:
            self.closed_at = now

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.closed_at or datetime.now()
        return (end - self.started_at).total_seconds()


class SessionRegistry:
    """
    Tracks live sessions for health and metrics reporting.

    Sessions register on accept and unregister on teardown; nothing here is
    needed for relaying, so a lookup miss is only logged.
    """

    def __init__(self):
        self.sessions: Dict[int, SessionContext] = {}

    def register(self, ctx: SessionContext) -> int:
        key = id(ctx)
        self.sessions[key] = ctx
        logger.info(f"Session registered (active sessions: {len(self.sessions)})")
        return key

    def unregister(self, key: int) -> Optional[SessionContext]:
        """
        Remove a session from tracking.

        Should be called in the finally block of the websocket handler.
        """
        ctx = self.sessions.pop(key, None)

        if ctx:
            duration = ctx.duration_seconds
            logger.info(
                f"Session cleanup: {ctx.stream_sid}, "
                f"State: {ctx.state.value}, "
                f"Duration: {duration or 0.0:.1f}s, "
                f"Frames in/forwarded/out/dropped: {ctx.frames_received}/"
                f"{ctx.frames_forwarded}/{ctx.frames_sent}/{ctx.frames_dropped}, "
                f"Tool calls: {ctx.tool_calls} ({ctx.tool_errors} errors)"
            )
        else:
            logger.warning(f"Cleanup for unknown session: {key}")
        return ctx

    def get_by_stream(self, stream_sid: str) -> Optional[SessionContext]:
        for ctx in self.sessions.values():
            if ctx.stream_sid == stream_sid:
                return ctx
        return None

    def get_active_sessions(self) -> Dict[int, SessionContext]:
        """Get all sessions currently relaying audio"""
        return {
            key: ctx
            for key, ctx in self.sessions.items()
            if ctx.state == SessionState.ACTIVE
        }

    def get_session_count(self) -> int:
        """Get total number of tracked sessions"""
        return len(self.sessions)
