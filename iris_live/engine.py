"""Iris Live engine: the session object an embedding host creates and destroys.

One ``LiveEngine`` wires the session controller to the microphone
pipeline, the playback queue and the camera pipeline, and exposes the
lifecycle calls the host drives.  Every call after :meth:`clean_up` is a
logged no-op.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from websockets.sync.client import connect as ws_connect

from .live.audio import AudioInputPipeline, PlaybackQueue
from .live.camera import ImageCapturePipeline, monotonic_ms
from .live.devices import (
    AudioInput,
    AudioOutput,
    CameraSource,
    OpenCVCamera,
    SoundDeviceInput,
    SoundDeviceOutput,
)
from .live.protocol import MessageCallback, MessageType
from .live.session import SessionController
from .live.state import SessionState
from .schemas import EngineStatus
from .settings import Settings, settings as default_settings


logger = logging.getLogger("iris-live")


class LiveEngine:
    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        callback: Optional[MessageCallback] = None,
        api_key: Optional[str] = None,
        muted: Optional[bool] = None,
        connector: Callable[..., Any] = ws_connect,
        audio_input_factory: Optional[Callable[[], AudioInput]] = None,
        audio_output_factory: Optional[Callable[[], AudioOutput]] = None,
        camera_factory: Optional[Callable[[], CameraSource]] = None,
        clock: Callable[[], float] = monotonic_ms,
        max_workers: int = 4,
    ) -> None:
        self.settings = config or default_settings
        self._callback = callback
        self._closed = False
        self._close_lock = threading.Lock()

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="iris-worker")
        # One worker keeps audio chunks in capture order.
        self._audio_send_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="iris-audio-send")

        self.playback = PlaybackQueue(
            device_factory=audio_output_factory or self._open_speaker,
            executor=self._executor,
            maxsize=self.settings.playback_queue_size,
            callback=self._deliver,
        )
        self.session = SessionController(
            url=self.settings.live_url(api_key),
            model_id=self.settings.model_id,
            muted=self.settings.muted if muted is None else muted,
            callback=self._deliver,
            audio_sink=self.playback.enqueue,
            connector=connector,
        )
        self.audio_input = AudioInputPipeline(
            self.session,
            device_factory=audio_input_factory or self._open_microphone,
            send_executor=self._audio_send_executor,
            sample_rate_hz=self.settings.sample_rate_hz,
            callback=self._deliver,
        )
        self.camera = ImageCapturePipeline(
            self.session,
            camera_factory=camera_factory or self._open_camera,
            executor=self._executor,
            interval_ms=self.settings.image_send_interval_ms,
            max_dimension=self.settings.max_image_dimension,
            jpeg_quality=self.settings.jpeg_quality,
            poll_interval_s=self.settings.camera_poll_interval_s,
            clock=clock,
            callback=self._deliver,
        )

    def __enter__(self) -> "LiveEngine":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.clean_up()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> bool:
        if not self._require_open("start"):
            return False
        return self.session.connect()

    def stop(self) -> bool:
        if not self._require_open("stop"):
            return False
        self.session.disconnect()
        return True

    def start_recording(self) -> bool:
        if not self._require_open("start_recording"):
            return False
        return self.audio_input.start()

    def stop_recording(self) -> bool:
        if not self._require_open("stop_recording"):
            return False
        return self.audio_input.stop()

    def start_camera(self) -> bool:
        if not self._require_open("start_camera"):
            return False
        return self.camera.start()

    def stop_camera(self) -> bool:
        if not self._require_open("stop_camera"):
            return False
        return self.camera.stop()

    def send_image(self, image_bytes: bytes) -> bool:
        if not self._require_open("send_image"):
            return False
        if not image_bytes:
            logger.warning("Ignoring empty image from host")
            return False
        return self.camera.send_image(image_bytes)

    def set_muted(self, muted: bool) -> None:
        if not self._require_open("set_muted"):
            return
        self.session.set_muted(muted)
        logger.info("Muted mode set to %s", muted)

    @property
    def is_connected(self) -> bool:
        return not self._closed and self.session.is_connected

    @property
    def is_recording(self) -> bool:
        return not self._closed and self.audio_input.is_recording

    @property
    def is_camera_active(self) -> bool:
        return not self._closed and self.camera.is_active

    @property
    def is_muted(self) -> bool:
        return self.session.muted

    def status(self) -> EngineStatus:
        state = SessionState.DISCONNECTED if self._closed else self.session.state
        return EngineStatus(
            active=not self._closed,
            state=state.value,
            connected=self.is_connected,
            recording=self.is_recording,
            camera_active=self.is_camera_active,
            muted=self.is_muted,
            playback_queued=len(self.playback),
            connect_attempts=self.session.attempts,
            last_reason=self.session.last_reason,
        )

    def clean_up(self) -> None:
        """Release everything; the engine cannot be restarted afterwards."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self.audio_input.stop()
        self.session.disconnect(silent=True)
        self._audio_send_executor.shutdown(wait=False, cancel_futures=True)
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.audio_input.clear()
        dropped = self.playback.clear()
        if dropped:
            logger.info("Dropped %d queued playback chunks", dropped)
        self.playback.release()
        self.camera.stop()
        logger.info("Live engine cleaned up")

    def _require_open(self, operation: str) -> bool:
        if self._closed:
            logger.warning("Ignoring %s: the engine has been cleaned up", operation)
            return False
        return True

    def _deliver(self, message: str, message_type: MessageType) -> None:
        logger.debug("Host event %s: %s", message_type.value, message)
        if self._callback is None:
            return
        try:
            self._callback(message, message_type)
        except Exception:
            logger.exception("Host callback failed for %s event", message_type.value)

    def _open_microphone(self) -> AudioInput:
        return SoundDeviceInput(
            sample_rate_hz=self.settings.sample_rate_hz,
            block_frames=self.settings.audio_block_frames,
            device=self.settings.input_device,
        )

    def _open_speaker(self) -> AudioOutput:
        return SoundDeviceOutput(
            sample_rate_hz=self.settings.sample_rate_hz,
            device=self.settings.output_device,
        )

    def _open_camera(self) -> CameraSource:
        return OpenCVCamera(self.settings.camera_index)
