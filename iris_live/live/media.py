"""Audio and image units handed from capture to the session."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


SAMPLE_RATE_HZ = 24000
CHANNELS = 1


@dataclass(frozen=True)
class AudioChunk:
    """Mono 16-bit PCM captured between two accumulator drains.

    ``samples`` is copied on construction and made read-only.
    """

    samples: np.ndarray
    sample_rate_hz: int = SAMPLE_RATE_HZ
    channels: int = CHANNELS

    def __post_init__(self) -> None:
        samples = np.array(self.samples, dtype=np.int16, copy=True).reshape(-1)
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    def __len__(self) -> int:
        return int(self.samples.size)

    @property
    def duration_ms(self) -> float:
        return 1000.0 * len(self) / (self.sample_rate_hz * self.channels)

    def to_pcm_bytes(self) -> bytes:
        """Little-endian wire bytes regardless of host byte order."""
        return self.samples.astype("<i2", copy=False).tobytes()

    @classmethod
    def from_pcm_bytes(cls, data: bytes, sample_rate_hz: int = SAMPLE_RATE_HZ) -> "AudioChunk":
        usable = len(data) - len(data) % 2
        return cls(np.frombuffer(data[:usable], dtype="<i2"), sample_rate_hz=sample_rate_hz)


@dataclass(frozen=True)
class ImageFrame:
    """One encoded camera frame."""

    data: bytes
    width: int
    height: int
    timestamp_ms: int


@dataclass(frozen=True)
class RawFrame:
    """One decoded camera frame as an ``(height, width, 3)`` RGB array."""

    pixels: np.ndarray
    timestamp_ms: int

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])
