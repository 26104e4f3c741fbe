"""
Linear PCM buffers that carry their sample rate.

Nothing on the wire says which rate a PCM byte blob is at, so every stage
takes and returns a PcmBuffer and checks the rate it expects.
"""
import base64
from dataclasses import dataclass

import numpy as np

from phone_relay.errors import MalformedFrameError

TELEPHONY_SAMPLE_RATE = 8000
AI_INPUT_SAMPLE_RATE = 16000
AI_OUTPUT_SAMPLE_RATE = 24000

# Little-endian int16, as Gemini Live sends and expects it
_PCM_DTYPE = np.dtype("<i2")


@dataclass(frozen=True)
class PcmBuffer:
    samples: np.ndarray
    sample_rate: int

    @classmethod
    def from_bytes(cls, data: bytes, sample_rate: int) -> "PcmBuffer":
        """Parse raw little-endian int16 PCM. Odd byte counts are malformed."""
        if len(data) % _PCM_DTYPE.itemsize:
            raise MalformedFrameError(
                f"PCM chunk of {len(data)} bytes is not a whole number of samples"
            )
        samples = np.frombuffer(data, dtype=_PCM_DTYPE).astype(np.int16)
        return cls(samples=samples, sample_rate=sample_rate)

    @property
    def mime_type(self) -> str:
        return f"audio/pcm;rate={self.sample_rate}"

    @property
    def duration_ms(self) -> float:
        return len(self.samples) * 1000.0 / self.sample_rate

    def to_bytes(self) -> bytes:
        return self.samples.astype(_PCM_DTYPE).tobytes()

    def to_base64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("utf-8")

    def expect_rate(self, sample_rate: int) -> None:
        if self.sample_rate != sample_rate:
            raise ValueError(
                f"Expected PCM at {sample_rate}Hz, got {self.sample_rate}Hz"
            )

    def __len__(self) -> int:
        return len(self.samples)
