"""Throttled camera pipeline.

Frames arrive from a camera thread far more often than the Live API
needs them.  A frame is accepted only when at least ``interval_ms`` have
passed since the last accepted frame; everything else is discarded
without decoding.  Accepted raw frames are scaled so the longer side fits
``max_dimension``, encoded once as JPEG and sent as an ``image/jpeg``
media chunk.
"""

from __future__ import annotations

import io
import logging
import threading
import time
from concurrent.futures import Executor
from typing import Callable, Optional

from PIL import Image

from .devices import CameraSource, DeviceError
from .media import ImageFrame, RawFrame
from .protocol import IMAGE_JPEG_MIME, MessageCallback, MessageType, b64encode, encode_media_chunk
from .session import SessionController


logger = logging.getLogger("iris-live")

IMAGE_SEND_INTERVAL_MS = 3000
MAX_IMAGE_DIMENSION = 1024
JPEG_QUALITY = 70


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def scale_dimensions(width: int, height: int, max_dimension: int = MAX_IMAGE_DIMENSION) -> tuple[int, int]:
    """Fit ``width`` x ``height`` inside a ``max_dimension`` square, keeping the aspect ratio."""
    if width <= 0 or height <= 0:
        raise ValueError("Image dimensions must be positive")
    if width <= max_dimension and height <= max_dimension:
        return width, height
    if width > height:
        ratio = width / max_dimension
        return max_dimension, max(1, int(height / ratio))
    ratio = height / max_dimension
    return max(1, int(width / ratio)), max_dimension


def compress_image(
    data: bytes,
    *,
    max_dimension: int = MAX_IMAGE_DIMENSION,
    quality: int = JPEG_QUALITY,
) -> bytes:
    """Decode any Pillow-readable image and return a scaled JPEG."""
    with Image.open(io.BytesIO(data)) as image:
        image = image.convert("RGB")
        size = scale_dimensions(image.width, image.height, max_dimension)
        if size != image.size:
            image = image.resize(size, Image.Resampling.BILINEAR)
        with io.BytesIO() as output:
            image.save(output, format="JPEG", quality=quality)
            return output.getvalue()


def encode_frame(
    frame: RawFrame,
    *,
    max_dimension: int = MAX_IMAGE_DIMENSION,
    quality: int = JPEG_QUALITY,
) -> ImageFrame:
    """Scale a raw camera frame and encode it as JPEG in one pass."""
    image = Image.fromarray(frame.pixels).convert("RGB")
    size = scale_dimensions(image.width, image.height, max_dimension)
    if size != image.size:
        image = image.resize(size, Image.Resampling.BILINEAR)
    with io.BytesIO() as output:
        image.save(output, format="JPEG", quality=quality)
        data = output.getvalue()
    return ImageFrame(data=data, width=size[0], height=size[1], timestamp_ms=frame.timestamp_ms)


class ImageCapturePipeline:
    def __init__(
        self,
        session: SessionController,
        *,
        camera_factory: Callable[[], CameraSource],
        executor: Executor,
        interval_ms: int = IMAGE_SEND_INTERVAL_MS,
        max_dimension: int = MAX_IMAGE_DIMENSION,
        jpeg_quality: int = JPEG_QUALITY,
        poll_interval_s: float = 0.0,
        clock: Callable[[], float] = monotonic_ms,
        callback: Optional[MessageCallback] = None,
    ) -> None:
        self._session = session
        self._camera_factory = camera_factory
        self._executor = executor
        self.interval_ms = interval_ms
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality
        self.poll_interval_s = poll_interval_s
        self._clock = clock
        self._callback = callback

        self._state_lock = threading.Lock()
        self._throttle_lock = threading.Lock()
        self._active = False
        self._stop_requested = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_accepted_ms: float | None = None

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self) -> bool:
        with self._state_lock:
            if self._active:
                return False
            if self._thread is not None and self._thread.is_alive():
                logger.warning("Previous camera capture is still shutting down; not starting")
                return False
            try:
                camera = self._camera_factory()
            except DeviceError as exc:
                logger.error("Camera unavailable: %s", exc)
                self._notify(f"Camera unavailable: {exc}")
                return False
            self._active = True
            self._stop_requested.clear()
            self._thread = threading.Thread(
                target=self._capture_loop,
                args=(camera,),
                name="iris-camera",
                daemon=True,
            )
            self._thread.start()
        logger.info("Camera capture started")
        return True

    def stop(self, timeout: float = 2.0) -> bool:
        with self._state_lock:
            was_active = self._active
            self._active = False
            self._stop_requested.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Camera thread did not stop within %.1fs", timeout)
        if was_active:
            logger.info("Camera capture stopped")
        return was_active

    def on_frame_available(self, frame: RawFrame) -> bool:
        """Throttle gate; returns True when the frame was accepted."""
        now = self._clock()
        with self._throttle_lock:
            last = self._last_accepted_ms
            if last is not None and now - last < self.interval_ms:
                logger.debug("Image capture skipped: %.0f ms since last frame", now - last)
                return False
            self._last_accepted_ms = now
        try:
            self._executor.submit(self._process_frame, frame)
        except RuntimeError:
            logger.debug("Image executor is shut down; dropping frame")
            return False
        return True

    def send_image(self, data: bytes) -> bool:
        """Queue a host-supplied image; not throttled."""
        try:
            self._executor.submit(self.process_and_send, data)
        except RuntimeError:
            logger.debug("Image executor is shut down; dropping host image")
            return False
        return True

    def process_and_send(self, data: bytes) -> bool:
        if not self._session.is_connected:
            logger.debug("Session not connected; skipping image")
            return False
        try:
            jpeg = compress_image(data, max_dimension=self.max_dimension, quality=self.jpeg_quality)
        except (OSError, ValueError) as exc:
            logger.warning("Could not decode image: %s", exc)
            return False
        logger.debug("Send image (%d bytes)", len(jpeg))
        return self._session.send(encode_media_chunk(b64encode(jpeg), IMAGE_JPEG_MIME))

    def _process_frame(self, frame: RawFrame) -> bool:
        if not self._active:
            logger.debug("Camera stopped; skipping accepted frame")
            return False
        if not self._session.is_connected:
            logger.debug("Session not connected; skipping camera frame")
            return False
        try:
            image = encode_frame(frame, max_dimension=self.max_dimension, quality=self.jpeg_quality)
        except (OSError, ValueError) as exc:
            logger.warning("Could not encode camera frame: %s", exc)
            return False
        logger.debug("Send camera frame %dx%d (%d bytes)", image.width, image.height, len(image.data))
        return self._session.send(encode_media_chunk(b64encode(image.data), IMAGE_JPEG_MIME))

    def _capture_loop(self, camera: CameraSource) -> None:
        try:
            while not self._stop_requested.is_set():
                frame = camera.read()
                if frame is None:
                    self._stop_requested.wait(self.poll_interval_s or 0.05)
                    continue
                if not self._stop_requested.is_set():
                    self.on_frame_available(frame)
                if self.poll_interval_s:
                    self._stop_requested.wait(self.poll_interval_s)
        except Exception as exc:
            logger.exception("Camera capture failed: %s", exc)
            self._notify(f"Camera capture failed: {exc}")
        finally:
            self._active = False
            try:
                camera.close()
            except Exception as exc:
                logger.warning("Error releasing camera: %s", exc)

    def _notify(self, message: str) -> None:
        if self._callback is None:
            return
        try:
            self._callback(message, MessageType.ERROR)
        except Exception:
            logger.exception("Host callback failed for camera error")
