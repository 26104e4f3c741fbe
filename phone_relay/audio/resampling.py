"""
Audio resampling: 8kHz → 16kHz inbound, 24kHz → 8kHz outbound

Twilio streams 8kHz audio (telephony standard).
Gemini Live takes 16kHz input and speaks at 24kHz.

Both ratios are integers, so no filter library is needed:
- upsampling is sample duplication (default) or linear interpolation
- downsampling is plain decimation (keep every 3rd sample)

Duplication keeps high-frequency content sharp, which helps transcription.
Interpolation is smoother and trades that for fewer imaging artifacts.
"""
from enum import Enum
import logging

import numpy as np

from phone_relay.audio.pcm import (
    AI_INPUT_SAMPLE_RATE,
    AI_OUTPUT_SAMPLE_RATE,
    TELEPHONY_SAMPLE_RATE,
    PcmBuffer,
)

logger = logging.getLogger(__name__)

DOWNSAMPLE_FACTOR = AI_OUTPUT_SAMPLE_RATE // TELEPHONY_SAMPLE_RATE  # 3


class UpsamplePolicy(str, Enum):
    """How the extra 16kHz sample between two 8kHz samples is produced"""
    DUPLICATE = "duplicate"
    LINEAR = "linear"


def upsample_8k_to_16k(
    audio_8k: PcmBuffer,
    policy: UpsamplePolicy = UpsamplePolicy.DUPLICATE,
) -> PcmBuffer:
    """
    Upsample telephony audio from 8kHz to 16kHz for Gemini.

    Args:
        audio_8k: PCM at 8kHz
        policy: DUPLICATE repeats each sample, LINEAR inserts the mean of
            each sample and its successor (the last sample pairs with itself)

    Returns:
        PCM at 16kHz, exactly twice as many samples
    """
    audio_8k.expect_rate(TELEPHONY_SAMPLE_RATE)
    samples = audio_8k.samples
    policy = UpsamplePolicy(policy)

    if policy is UpsamplePolicy.DUPLICATE:
        result = np.repeat(samples, 2)
    else:
        successors = np.concatenate([samples[1:], samples[-1:]])
        midpoints = (samples.astype(np.int32) + successors.astype(np.int32)) // 2
        result = np.empty(len(samples) * 2, dtype=np.int16)
        result[0::2] = samples
        result[1::2] = midpoints.astype(np.int16)

    logger.debug(f"Upsampled 8kHz → 16kHz ({policy.value}): {len(samples)} → {len(result)} samples")
    return PcmBuffer(samples=result.astype(np.int16), sample_rate=AI_INPUT_SAMPLE_RATE)


def downsample_24k_to_8k(audio_24k: PcmBuffer) -> PcmBuffer:
    """
    Downsample Gemini output from 24kHz to 8kHz for Twilio by decimation.

    A trailing partial group of fewer than 3 samples is discarded.

    Args:
        audio_24k: PCM at 24kHz

    Returns:
        PCM at 8kHz, floor(n / 3) samples
    """
    audio_24k.expect_rate(AI_OUTPUT_SAMPLE_RATE)
    samples = audio_24k.samples
    out_len = len(samples) // DOWNSAMPLE_FACTOR
    result = samples[: out_len * DOWNSAMPLE_FACTOR : DOWNSAMPLE_FACTOR].copy()

    logger.debug(f"Downsampled 24kHz → 8kHz: {len(samples)} → {len(result)} samples")
    return PcmBuffer(samples=result, sample_rate=TELEPHONY_SAMPLE_RATE)
