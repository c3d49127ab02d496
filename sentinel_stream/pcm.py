"""PCM framing utilities.

The encoder is started with ``-f s16le -ac 1``; these helpers are the only
place that decides the byte layout written to its stdin.
"""

from __future__ import annotations

import numpy as np

# 20ms 単位でキャプチャ（遅延とシステムコール回数のバランス）
FRAMES_PER_SECOND = 50
BYTES_PER_SAMPLE = 2
PCM_DTYPE = np.dtype("<i2")  # little-endian int16


def frame_size_for_rate(sample_rate: float) -> int:
    """Samples per frame for a device rate (round(rate / 50))."""
    if sample_rate <= 0:
        raise ValueError(f"Invalid sample_rate: {sample_rate}")
    size = int(round(sample_rate / FRAMES_PER_SECOND))
    if size <= 0:
        raise ValueError(f"sample_rate {sample_rate} is too low for framing")
    return size


def serialize_frame(samples: np.ndarray) -> bytes:
    """Serialize int16 samples as s16le bytes, preserving order."""
    flat = np.asarray(samples).reshape(-1)
    if flat.dtype.kind != "i" or flat.dtype.itemsize != BYTES_PER_SAMPLE:
        raise ValueError(f"Expected int16 samples, got {flat.dtype}")
    return flat.astype(PCM_DTYPE, copy=False).tobytes()


def deserialize_frame(payload: bytes) -> np.ndarray:
    """Decode s16le bytes back to int16 samples."""
    if len(payload) % BYTES_PER_SAMPLE != 0:
        raise ValueError(f"Truncated PCM payload: {len(payload)} bytes")
    return np.frombuffer(payload, dtype=PCM_DTYPE).astype(np.int16)


def mix_to_mono(block: np.ndarray) -> np.ndarray:
    """Average a (frames, channels) int16 block down to one channel."""
    if block.ndim == 1:
        return block.astype(np.int16, copy=False)
    if block.shape[1] == 1:
        return block[:, 0].astype(np.int16, copy=False)
    mixed = block.astype(np.int32).mean(axis=1)
    return np.clip(np.round(mixed), -32768, 32767).astype(np.int16)
