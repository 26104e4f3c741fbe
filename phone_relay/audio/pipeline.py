"""
Transcoding pipelines between Twilio and Gemini Live.

Inbound:  mu-law 8kHz → PCM 8kHz → (gain) → PCM 16kHz
Outbound: PCM 24kHz bytes → PCM 8kHz → mu-law 8kHz

Pure functions: no I/O, no state between frames, so one telephony frame
always maps to one AI chunk and back.

The outbound side trusts that Gemini audio is 24kHz as the session contract
says; the MIME type on each part is not inspected.
"""
import logging

import numpy as np

from phone_relay.audio.conversion import mulaw_to_pcm, pcm_to_mulaw
from phone_relay.audio.pcm import AI_OUTPUT_SAMPLE_RATE, TELEPHONY_SAMPLE_RATE, PcmBuffer
from phone_relay.audio.resampling import (
    DOWNSAMPLE_FACTOR,
    UpsamplePolicy,
    downsample_24k_to_8k,
    upsample_8k_to_16k,
)
from phone_relay.errors import MalformedFrameError

logger = logging.getLogger(__name__)

# One decimation group: 3 samples of 2 bytes
OUTBOUND_ALIGNMENT_BYTES = DOWNSAMPLE_FACTOR * 2


def apply_gain(audio: PcmBuffer, gain: float) -> PcmBuffer:
    """Scale PCM by a linear gain, clipping to the int16 range."""
    if gain == 1.0:
        return audio
    scaled = np.clip(audio.samples.astype(np.float32) * gain, -32768, 32767)
    return PcmBuffer(samples=scaled.astype(np.int16), sample_rate=audio.sample_rate)


def telephony_frame_to_ai_chunk(
    mulaw_bytes: bytes,
    policy: UpsamplePolicy = UpsamplePolicy.DUPLICATE,
    gain: float = 1.0,
) -> PcmBuffer:
    """
    Convert one Twilio media frame into a 16kHz PCM chunk for Gemini.

    Args:
        mulaw_bytes: Decoded (not base64) mu-law payload
        policy: Upsampling policy
        gain: Linear gain applied at 8kHz before upsampling

    Returns:
        PcmBuffer at 16kHz; empty when the frame is empty
    """
    pcm_8k = PcmBuffer(samples=mulaw_to_pcm(mulaw_bytes), sample_rate=TELEPHONY_SAMPLE_RATE)
    pcm_8k = apply_gain(pcm_8k, gain)
    return upsample_8k_to_16k(pcm_8k, policy)


def ai_chunk_to_telephony_frame(pcm_bytes: bytes) -> bytes:
    """
    Convert one Gemini 24kHz PCM audio part into a Twilio mu-law frame.

    Args:
        pcm_bytes: Decoded (not base64) little-endian int16 PCM at 24kHz

    Returns:
        mu-law bytes at 8kHz, len(pcm_bytes) // 6 of them

    Raises:
        MalformedFrameError: If the chunk is not a whole number of 3-sample groups
    """
    if len(pcm_bytes) % OUTBOUND_ALIGNMENT_BYTES:
        raise MalformedFrameError(
            f"AI audio chunk of {len(pcm_bytes)} bytes is not a multiple of "
            f"{OUTBOUND_ALIGNMENT_BYTES} bytes"
        )
    pcm_24k = PcmBuffer.from_bytes(pcm_bytes, AI_OUTPUT_SAMPLE_RATE)
    pcm_8k = downsample_24k_to_8k(pcm_24k)
    return pcm_to_mulaw(pcm_8k.samples)
