"""
Bounded buffering for inbound audio that arrives before Gemini is ready.

Twilio starts streaming caller audio as soon as the call connects, while the
Gemini session is still being set up. Those frames are held here and flushed
once the session is active. The buffer never grows past its capacity: the
oldest frame is dropped to make room.
"""
import logging
from collections import deque
from typing import Deque, Optional

from phone_relay.audio.pcm import PcmBuffer

logger = logging.getLogger(__name__)


class PendingAudioBuffer:
    """
    FIFO of transcoded chunks waiting for the AI session.

    Drop-oldest on overflow; `dropped` counts how many frames were lost.
    """

    def __init__(self, stream_sid: Optional[str] = None, maxsize: int = 50):
        # ~1 second at 20ms per chunk
        self.stream_sid = stream_sid
        self.maxsize = maxsize
        self._chunks: Deque[PcmBuffer] = deque(maxlen=maxsize)
        self.dropped = 0

    def append(self, chunk: PcmBuffer) -> None:
        if len(self._chunks) == self.maxsize:
            self.dropped += 1
            logger.debug(
                f"[{self.stream_sid}] Pre-session buffer full ({self.maxsize}), dropping oldest frame"
            )
        self._chunks.append(chunk)

    def popleft(self) -> PcmBuffer:
        return self._chunks.popleft()

    def clear(self) -> None:
        self._chunks.clear()

    def __len__(self) -> int:
        return len(self._chunks)
