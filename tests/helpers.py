from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Iterable

from iris_live.live.media import RawFrame
from iris_live.live.protocol import MessageType


_CLOSE = object()


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class SyncExecutor:
    """Runs submitted work inline, in submission order."""

    def __init__(self) -> None:
        self.shut_down = False
        self.submitted = 0

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        if self.shut_down:
            raise RuntimeError("cannot schedule new futures after shutdown")
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        self.shut_down = True


class FakeSession:
    def __init__(self, connected: bool = True) -> None:
        self.is_connected = connected
        self.sent: list[str] = []
        self._lock = threading.Lock()

    def send(self, payload: str) -> bool:
        if not self.is_connected:
            return False
        with self._lock:
            self.sent.append(payload)
        return True


class Recorder:
    """Host callback that records ``(message, type)`` pairs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, MessageType]] = []
        self._lock = threading.Lock()

    def __call__(self, message: str, message_type: MessageType) -> None:
        with self._lock:
            self.events.append((message, message_type))

    def of_type(self, message_type: MessageType) -> list[str]:
        with self._lock:
            return [message for message, kind in self.events if kind is message_type]


class FakeConnection:
    """Stands in for a ``websockets.sync`` client connection."""

    def __init__(self, inbound: Iterable[Any] = (), *, close_reason: str = "") -> None:
        self.sent: list[Any] = []
        self.close_reason = close_reason
        self.closed = threading.Event()
        self._inbound: queue.Queue[Any] = queue.Queue()
        for item in inbound:
            self._inbound.put(item)

    def feed(self, item: Any) -> None:
        self._inbound.put(item)

    def finish(self) -> None:
        """Simulate a clean close initiated by the server."""
        self._inbound.put(_CLOSE)

    def send(self, payload: Any) -> None:
        if self.closed.is_set():
            from websockets.exceptions import ConnectionClosedOK

            raise ConnectionClosedOK(None, None)
        self.sent.append(payload)

    def close(self) -> None:
        self.closed.set()
        self._inbound.put(_CLOSE)

    def __iter__(self):
        while True:
            item = self._inbound.get()
            if item is _CLOSE:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


class FakeConnector:
    def __init__(self, connection: FakeConnection | None = None, error: Exception | None = None) -> None:
        self.connection = connection or FakeConnection()
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.connection


class FakeAudioInput:
    def __init__(self, blocks: Iterable[bytes] = ()) -> None:
        self._blocks: queue.Queue[bytes] = queue.Queue()
        for block in blocks:
            self._blocks.put(block)
        self.closed = False
        self.reads = 0

    def push(self, block: bytes) -> None:
        self._blocks.put(block)

    def read(self) -> bytes:
        self.reads += 1
        try:
            return self._blocks.get(timeout=0.01)
        except queue.Empty:
            return b""

    def close(self) -> None:
        self.closed = True


class FakeAudioOutput:
    def __init__(self, delay: float = 0.0, gate: threading.Event | None = None) -> None:
        self.delay = delay
        self.gate = gate
        self.written: list[bytes] = []
        self.closed = False
        self.active_writes = 0
        self.max_concurrent_writes = 0
        self._lock = threading.Lock()

    def write(self, pcm: bytes) -> None:
        with self._lock:
            self.active_writes += 1
            self.max_concurrent_writes = max(self.max_concurrent_writes, self.active_writes)
        try:
            if self.gate is not None:
                self.gate.wait(2.0)
            if self.delay:
                time.sleep(self.delay)
            with self._lock:
                self.written.append(pcm)
        finally:
            with self._lock:
                self.active_writes -= 1

    def close(self) -> None:
        self.closed = True


class FakeCamera:
    def __init__(self, frames: Iterable[RawFrame] = ()) -> None:
        self._frames: queue.Queue[RawFrame] = queue.Queue()
        for frame in frames:
            self._frames.put(frame)
        self.closed = False

    def push(self, frame: RawFrame) -> None:
        self._frames.put(frame)

    def read(self) -> RawFrame | None:
        try:
            return self._frames.get(timeout=0.01)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, times: Iterable[float] = ()) -> None:
        self.now = 0.0
        self._times = list(times)

    def __call__(self) -> float:
        if self._times:
            self.now = self._times.pop(0)
        return self.now
