"""
Raw PCM helpers for live capture.

Browser capture in raw mode sends headerless signed 16-bit little-endian PCM.
ffmpeg needs a self-describing container, so a canonical 44-byte WAV header is
synthesised in front of the bytes before segmentation.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

WAV_HEADER_BYTES = 44
SAMPLE_WIDTH = 2  # 16-bit

# RMS threshold for the quiet-buffer debug log (int16 scale)
RMS_SILENCE_THRESHOLD = 100


@dataclass(frozen=True)
class PcmFormat:
    """Layout of a raw PCM buffer."""

    sample_rate: int = 16000
    channels: int = 1

    @property
    def block_align(self) -> int:
        return self.channels * SAMPLE_WIDTH

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.block_align

    def duration_seconds(self, nbytes: int) -> float:
        return nbytes / self.byte_rate if self.byte_rate else 0.0


def build_wav_header(data_length: int, fmt: PcmFormat) -> bytes:
    """Canonical RIFF/WAVE header for `data_length` bytes of 16-bit PCM."""
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,  # PCM fmt chunk size
        1,  # PCM
        fmt.channels,
        fmt.sample_rate,
        fmt.byte_rate,
        fmt.block_align,
        SAMPLE_WIDTH * 8,
        b"data",
        data_length,
    )


def trim_to_frames(pcm_bytes: bytes, fmt: PcmFormat) -> bytes:
    """Drop a trailing partial sample frame (e.g. odd length for mono int16)."""
    extra = len(pcm_bytes) % fmt.block_align
    if extra:
        logger.warning(
            "PCM buffer length %d not a multiple of %d; dropping %d trailing bytes",
            len(pcm_bytes), fmt.block_align, extra,
        )
        return pcm_bytes[: len(pcm_bytes) - extra]
    return pcm_bytes


def rms_int16(pcm_bytes: bytes) -> float:
    """RMS of int16 samples (for optional silence logging)."""
    if len(pcm_bytes) < 2:
        return 0.0
    samples = np.frombuffer(pcm_bytes[: len(pcm_bytes) - len(pcm_bytes) % 2], dtype="<i2")
    return float(np.sqrt(np.mean(samples.astype(np.float32) ** 2)))


def wrap_pcm_as_wav(pcm_bytes: bytes, fmt: PcmFormat) -> bytes:
    """Header + frame-aligned PCM, ready to be written as a .wav file."""
    pcm_bytes = trim_to_frames(pcm_bytes, fmt)
    rms = rms_int16(pcm_bytes)
    if rms < RMS_SILENCE_THRESHOLD:
        logger.debug(
            "PCM buffer is near-silent: %.1fs, RMS %.1f",
            fmt.duration_seconds(len(pcm_bytes)), rms,
        )
    return build_wav_header(len(pcm_bytes), fmt) + pcm_bytes
