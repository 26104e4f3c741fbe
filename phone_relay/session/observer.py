"""
Session observers: where the relay reports what happens on a call.

The relay calls these hooks at fixed points (transcript text, session log
lines, tool results, completed bookings). A dashboard, metrics exporter or
test can subclass SessionObserver without the relay knowing how the events
are delivered.
"""
import logging
from typing import Any, Iterable, Optional

from phone_relay.tools.dispatcher import ToolResponse

logger = logging.getLogger(__name__)


class SessionObserver:
    """Base observer; every hook is a no-op."""

    def on_transcript(self, stream_sid: Optional[str], speaker: str, text: str) -> None:
        pass

    def on_log(self, stream_sid: Optional[str], message: str, data: Any = None) -> None:
        pass

    def on_tool_result(self, stream_sid: Optional[str], response: ToolResponse) -> None:
        pass

    def on_booking(self, stream_sid: Optional[str], booking: dict) -> None:
        pass


class LoggingObserver(SessionObserver):
    """Writes session events to the standard logger."""

    def on_transcript(self, stream_sid, speaker, text):
        logger.info(f"[{stream_sid}] {speaker}: {text}")

    def on_log(self, stream_sid, message, data=None):
        if data is None:
            logger.info(f"[{stream_sid}] {message}")
        else:
            logger.info(f"[{stream_sid}] {message} {data}")

    def on_tool_result(self, stream_sid, response):
        logger.info(f"[{stream_sid}] Tool {response.name} (id={response.id}) → {response.result}")

    def on_booking(self, stream_sid, booking):
        logger.info(f"[{stream_sid}] Booking created: {booking}")


class CompositeObserver(SessionObserver):
    """Fans each event out to several observers; one failing never blocks the rest."""

    def __init__(self, observers: Iterable[SessionObserver]):
        self.observers = list(observers)

    def _each(self, hook: str, *args) -> None:
        for observer in self.observers:
            try:
                getattr(observer, hook)(*args)
            except Exception as e:
                logger.error(f"Observer {type(observer).__name__}.{hook} failed: {e}", exc_info=True)

    def on_transcript(self, stream_sid, speaker, text):
        self._each("on_transcript", stream_sid, speaker, text)

    def on_log(self, stream_sid, message, data=None):
        self._each("on_log", stream_sid, message, data)

    def on_tool_result(self, stream_sid, response):
        self._each("on_tool_result", stream_sid, response)

    def on_booking(self, stream_sid, booking):
        self._each("on_booking", stream_sid, booking)
