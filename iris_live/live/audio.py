"""Outbound microphone pipeline and inbound playback queue."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from typing import Callable, Optional

import numpy as np

from .devices import AudioInput, AudioOutput, DeviceError
from .media import SAMPLE_RATE_HZ, AudioChunk
from .protocol import AUDIO_PCM_MIME, MessageCallback, MessageType, b64encode, encode_media_chunk
from .queue import ChunkQueue
from .session import SessionController


logger = logging.getLogger("iris-live")


class AudioInputPipeline:
    """Captures microphone blocks and streams them as ``audio/pcm`` chunks.

    A dedicated thread reads one block at a time from the input device.
    Each block is appended to the accumulator and the accumulator is then
    drained, under one lock, into a single :class:`AudioChunk`.  Chunks go
    to ``send_executor``, which must run tasks in submission order (a
    single worker) so chunks reach the wire in capture order.
    """

    def __init__(
        self,
        session: SessionController,
        *,
        device_factory: Callable[[], AudioInput],
        send_executor: Executor,
        sample_rate_hz: int = SAMPLE_RATE_HZ,
        callback: Optional[MessageCallback] = None,
    ) -> None:
        self._session = session
        self._device_factory = device_factory
        self._send_executor = send_executor
        self.sample_rate_hz = sample_rate_hz
        self._callback = callback

        self._accumulator: ChunkQueue[np.ndarray] = ChunkQueue(name="audio accumulator")
        self._accumulate_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._recording = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_recording(self) -> bool:
        return self._recording.is_set()

    def start(self) -> bool:
        with self._state_lock:
            if self._recording.is_set():
                return False
            if self._thread is not None and self._thread.is_alive():
                logger.warning("Previous audio capture is still shutting down; not starting")
                return False
            try:
                device = self._device_factory()
            except DeviceError as exc:
                logger.error("Audio input unavailable: %s", exc)
                self._notify(f"Audio input unavailable: {exc}")
                return False
            self._recording.set()
            self._thread = threading.Thread(
                target=self._capture_loop,
                args=(device,),
                name="iris-audio-capture",
                daemon=True,
            )
            self._thread.start()
        logger.info("Start recording")
        return True

    def stop(self, timeout: float = 2.0) -> bool:
        with self._state_lock:
            was_recording = self._recording.is_set()
            self._recording.clear()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Audio capture thread did not stop within %.1fs", timeout)
        if was_recording:
            logger.info("Stop recording")
        return was_recording

    def clear(self) -> int:
        return self._accumulator.clear()

    def accept_samples(self, samples: np.ndarray) -> Optional[AudioChunk]:
        """Append one block and drain everything pending into one chunk."""
        if samples.size == 0:
            return None
        with self._accumulate_lock:
            self._accumulator.push(samples)
            pending = self._accumulator.drain()
            if not pending:
                return None
            chunk = AudioChunk(np.concatenate(pending), sample_rate_hz=self.sample_rate_hz)
            try:
                self._send_executor.submit(self._encode_and_send, chunk)
            except RuntimeError:
                logger.debug("Audio send executor is shut down; dropping %d samples", len(chunk))
        return chunk

    def _capture_loop(self, device: AudioInput) -> None:
        try:
            while self._recording.is_set():
                data = device.read()
                if not data:
                    continue
                usable = len(data) - len(data) % 2
                self.accept_samples(np.frombuffer(data[:usable], dtype=np.int16))
        except Exception as exc:
            logger.exception("Audio capture failed: %s", exc)
            self._notify(f"Audio capture failed: {exc}")
        finally:
            self._recording.clear()
            try:
                device.close()
            except Exception as exc:
                logger.warning("Error releasing audio input: %s", exc)

    def _encode_and_send(self, chunk: AudioChunk) -> bool:
        if not self._session.is_connected:
            logger.debug("Session not connected; skipping audio chunk of %d samples", len(chunk))
            return False
        payload = encode_media_chunk(b64encode(chunk.to_pcm_bytes()), AUDIO_PCM_MIME)
        logger.debug("Send audio chunk (%d samples)", len(chunk))
        return self._session.send(payload)

    def _notify(self, message: str) -> None:
        if self._callback is None:
            return
        try:
            self._callback(message, MessageType.ERROR)
        except Exception:
            logger.exception("Host callback failed for audio error")


class PlaybackQueue:
    """FIFO of PCM buffers drained through one output device.

    At most one drain task is active.  The drain task pops under the
    same lock that ``enqueue`` uses to decide whether to start a drain,
    and it clears its active flag in the same critical section where it
    finds the queue empty, so a chunk enqueued while a drain is finishing
    is always picked up.

    If the output device cannot be opened the host is told once and
    further chunks are dropped until :meth:`release`.
    """

    def __init__(
        self,
        *,
        device_factory: Callable[[], AudioOutput],
        executor: Executor,
        maxsize: Optional[int] = None,
        callback: Optional[MessageCallback] = None,
    ) -> None:
        self._device_factory = device_factory
        self._executor = executor
        self._callback = callback
        self._chunks: ChunkQueue[bytes] = ChunkQueue(maxsize, name="playback queue")
        self._lock = threading.Lock()
        self._device_lock = threading.Lock()
        self._draining = False
        self._released = False
        self._unavailable = False
        self._device: AudioOutput | None = None

    @property
    def is_draining(self) -> bool:
        with self._lock:
            return self._draining

    @property
    def has_device(self) -> bool:
        return self._device is not None

    @property
    def device_unavailable(self) -> bool:
        return self._unavailable

    def __len__(self) -> int:
        return len(self._chunks)

    def enqueue(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._lock:
            if self._released or self._unavailable:
                logger.debug("Playback unavailable; dropping %d bytes", len(chunk))
                return
            self._chunks.push(bytes(chunk))
            if self._draining:
                return
            self._draining = True
        try:
            self._executor.submit(self._drain)
        except RuntimeError:
            logger.debug("Playback executor is shut down; leaving %d chunks queued", len(self._chunks))
            with self._lock:
                self._draining = False

    def clear(self) -> int:
        return self._chunks.clear()

    def release(self) -> None:
        with self._lock:
            self._released = True
            self._chunks.clear()
        with self._device_lock:
            device, self._device = self._device, None
        if device is not None:
            try:
                device.close()
            except Exception as exc:
                logger.warning("Error releasing audio output: %s", exc)
            logger.info("Audio output released")

    def _drain(self) -> None:
        try:
            while True:
                with self._lock:
                    chunk = self._chunks.pop()
                    if chunk is None or self._released:
                        self._draining = False
                        return
                self._play(chunk)
        except Exception:
            logger.exception("Playback drain failed")
            with self._lock:
                self._draining = False

    def _play(self, chunk: bytes) -> None:
        with self._device_lock:
            if self._released or self._unavailable:
                return
            try:
                if self._device is None:
                    self._device = self._device_factory()
                self._device.write(chunk)
            except DeviceError as exc:
                if self._device is None:
                    self._mark_unavailable(exc)
                else:
                    logger.warning("Audio playback write failed: %s", exc)
            except Exception as exc:
                logger.warning("Audio playback write failed: %s", exc)

    def _mark_unavailable(self, exc: DeviceError) -> None:
        with self._lock:
            self._unavailable = True
            dropped = self._chunks.clear()
        logger.error("Audio output unavailable, dropping %d queued chunks: %s", dropped, exc)
        if self._callback is None:
            return
        try:
            self._callback(f"Audio output unavailable: {exc}", MessageType.ERROR)
        except Exception:
            logger.exception("Host callback failed for playback error")
