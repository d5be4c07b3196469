"""Microphone, speaker and camera adapters.

The pipelines only need three small interfaces: an audio input that
returns one block of native-endian int16 PCM per ``read``, an audio
output whose ``write`` blocks until the buffer is queued to the device,
and a camera whose ``read`` returns the next raw RGB frame.  The concrete
adapters use ``sounddevice`` and OpenCV, both imported lazily so the
rest of the package works on machines without PortAudio or a camera.
"""

from __future__ import annotations

import logging
import sys
import time
from typing import Any, Optional, Protocol

import numpy as np

from .media import CHANNELS, RawFrame


logger = logging.getLogger("iris-live")


class DeviceError(RuntimeError):
    """A capture or playback device could not be opened or used."""


class AudioInput(Protocol):
    def read(self) -> bytes: ...

    def close(self) -> None: ...


class AudioOutput(Protocol):
    def write(self, pcm: bytes) -> None: ...

    def close(self) -> None: ...


class CameraSource(Protocol):
    def read(self) -> Optional[RawFrame]: ...

    def close(self) -> None: ...


def _import_sounddevice() -> Any:
    """Import sounddevice, raising a DeviceError if PortAudio is unavailable."""
    try:
        import sounddevice as _sd

        return _sd
    except (ImportError, OSError) as exc:
        raise DeviceError(f"sounddevice is not available: {exc}") from exc


def _import_cv2() -> Any:
    try:
        import cv2 as _cv2

        return _cv2
    except ImportError as exc:
        raise DeviceError(f"OpenCV is not available: {exc}") from exc


class SoundDeviceInput:
    """Blocking microphone reader on a ``RawInputStream``."""

    def __init__(
        self,
        *,
        sample_rate_hz: int,
        block_frames: int,
        device: int | str | None = None,
    ) -> None:
        sd = _import_sounddevice()
        self.block_frames = block_frames
        try:
            self._stream = sd.RawInputStream(
                samplerate=sample_rate_hz,
                blocksize=block_frames,
                channels=CHANNELS,
                dtype="int16",
                device=device,
            )
            self._stream.start()
        except Exception as exc:
            raise DeviceError(f"Audio input failed to initialize: {exc}") from exc
        logger.info(
            "Microphone stream: rate=%dHz block=%d device=%s",
            sample_rate_hz,
            block_frames,
            device if device is not None else "default",
        )

    def read(self) -> bytes:
        if self._stream is None:
            return b""
        data, overflowed = self._stream.read(self.block_frames)
        if overflowed:
            logger.debug("Microphone input overflow")
        return bytes(data)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()


class SoundDeviceOutput:
    """Blocking speaker writer on a ``RawOutputStream``.

    Input buffers are little-endian PCM as received from the Live API.
    """

    def __init__(self, *, sample_rate_hz: int, device: int | str | None = None) -> None:
        sd = _import_sounddevice()
        try:
            self._stream = sd.RawOutputStream(
                samplerate=sample_rate_hz,
                channels=CHANNELS,
                dtype="int16",
                device=device,
            )
            self._stream.start()
        except Exception as exc:
            raise DeviceError(f"Audio output failed to initialize: {exc}") from exc
        logger.info(
            "Speaker stream: rate=%dHz device=%s",
            sample_rate_hz,
            device if device is not None else "default",
        )

    def write(self, pcm: bytes) -> None:
        if self._stream is None:
            raise DeviceError("Audio output is closed")
        usable = len(pcm) - len(pcm) % 2
        if not usable:
            return
        if sys.byteorder == "big":
            pcm = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.int16).tobytes()
            usable = len(pcm)
        underflowed = self._stream.write(pcm[:usable])
        if underflowed:
            logger.debug("Speaker output underflow")

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()


class OpenCVCamera:
    """Reads frames from a local camera and hands them out as RGB arrays.

    Frames are not encoded here; the capture pipeline encodes only the
    frames its throttle accepts.  The host picks ``index``; no probing
    happens here.
    """

    def __init__(self, index: int = 0) -> None:
        cv2 = _import_cv2()
        self._cv2 = cv2
        self.index = index
        capture = cv2.VideoCapture(index)
        if not capture.isOpened():
            capture.release()
            raise DeviceError(f"No camera found at index {index}")
        capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._capture = capture
        logger.info("Camera %s opened", index)

    def read(self) -> Optional[RawFrame]:
        if self._capture is None:
            return None
        ok, frame = self._capture.read()
        if not ok or frame is None:
            return None
        return RawFrame(
            pixels=self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB),
            timestamp_ms=int(time.time() * 1000),
        )

    def close(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.release()
            logger.info("Camera %s released", self.index)
