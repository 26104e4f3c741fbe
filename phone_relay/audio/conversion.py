"""
Audio format conversion: mu-law ↔ PCM

Twilio uses 8-bit mu-law encoding (telephony standard).
Gemini Live expects and produces 16-bit linear PCM.

Both directions are table lookups built once at import with numpy,
so a 20ms frame converts in microseconds.
"""
import numpy as np
import logging

logger = logging.getLogger(__name__)

# ITU-T G.711 mu-law constants
_MULAW_BIAS = 0x84  # 132
_MULAW_CLIP = 32635


def _build_mulaw_decode_table() -> np.ndarray:
    """Build mu-law byte → int16 PCM lookup table (256 entries)."""
    codes = np.arange(256, dtype=np.int32)
    # Codes are stored complemented on the wire
    val = ~codes & 0xFF
    sign = val & 0x80
    exponent = (val >> 4) & 0x07
    mantissa = val & 0x0F
    magnitude = (((mantissa << 3) + _MULAW_BIAS) << exponent) - _MULAW_BIAS
    table = np.where(sign != 0, -magnitude, magnitude)
    return table.astype(np.int16)


def _build_mulaw_encode_table() -> np.ndarray:
    """Build int16 PCM → mu-law byte lookup table (65536 entries, indexed by sample + 32768)."""
    samples = np.arange(-32768, 32768, dtype=np.int32)
    sign = np.where(samples < 0, 0x80, 0)
    magnitude = np.minimum(np.abs(samples), _MULAW_CLIP) + _MULAW_BIAS

    # Exponent is the position of the highest set bit above bit 7.
    # magnitude is always in [132, 32767], so this lands in 0..7.
    _, highest = np.frexp(magnitude.astype(np.float64))
    exponent = highest.astype(np.int32) - 1 - 7

    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    codes = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return codes.astype(np.uint8)


_MULAW_DECODE_TABLE = _build_mulaw_decode_table()
_MULAW_ENCODE_TABLE = _build_mulaw_encode_table()


def mulaw_to_pcm(mulaw_bytes: bytes) -> np.ndarray:
    """
    Convert mu-law encoded bytes to PCM numpy array using lookup table.

    Args:
        mulaw_bytes: Raw mu-law audio bytes from Twilio

    Returns:
        numpy array of int16 PCM samples
    """
    indices = np.frombuffer(mulaw_bytes, dtype=np.uint8)
    return _MULAW_DECODE_TABLE[indices].copy()


def pcm_to_mulaw(pcm_samples: np.ndarray) -> bytes:
    """
    Convert PCM numpy array to mu-law encoded bytes.

    Values outside the int16 range are clipped first; the table itself
    clips magnitudes above 32635.

    Args:
        pcm_samples: numpy array of PCM samples (int16 expected)

    Returns:
        mu-law encoded bytes
    """
    if pcm_samples.dtype != np.int16:
        pcm_samples = np.clip(pcm_samples, -32768, 32767).astype(np.int16)

    indices = pcm_samples.astype(np.int32) + 32768
    return _MULAW_ENCODE_TABLE[indices].tobytes()


def quantization_step(code: int) -> int:
    """Width of the decode interval a mu-law code belongs to."""
    exponent = ((~code & 0xFF) >> 4) & 0x07
    return 1 << (exponent + 3)
