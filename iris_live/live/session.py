"""Gemini Live session controller for Iris Live.

The controller owns the websocket to the Live API and the connection
state machine.  Connecting happens on a dedicated reader thread: once the
websocket handshake completes the controller moves to ``connected`` and
sends the setup envelope built from the current mute flag, holding the
send lock so no producer frame goes out first, then tells the host.
Inbound frames are decoded and routed from that same thread; transcripts
and text go to the host callback, inline audio goes to the playback
sink.

``send`` is the only entry point producers use and is safe to call from
any thread.  While the session is not connected it drops the message and
returns ``False``; nothing is buffered for a later connection.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Callable, Optional

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK
from websockets.sync.client import connect as ws_connect

from .protocol import (
    MessageCallback,
    MessageType,
    ProtocolError,
    b64decode,
    decode,
    encode_setup,
)
from .state import ConnectionStateMachine, SessionState


logger = logging.getLogger("iris-live")

AudioSink = Callable[[bytes], None]

_KEY_PATTERN = re.compile(r"(key=)[^&]+")


def redact_url(url: str) -> str:
    return _KEY_PATTERN.sub(r"\1***", url)


def _close_reason(connection: Any) -> str:
    reason = getattr(connection, "close_reason", None)
    return str(reason) if reason else ""


def _closed_reason(exc: ConnectionClosed) -> str:
    frame = exc.rcvd or exc.sent
    if frame is not None and frame.reason:
        return frame.reason
    return str(exc)


class SessionController:
    """Owns one Live API websocket and its lifecycle."""

    def __init__(
        self,
        *,
        url: str,
        model_id: str,
        muted: bool = False,
        callback: Optional[MessageCallback] = None,
        audio_sink: Optional[AudioSink] = None,
        connector: Callable[..., Any] = ws_connect,
        open_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.model_id = model_id
        self._muted = muted
        self._callback = callback
        self._audio_sink = audio_sink
        self._connector = connector
        self._open_timeout = open_timeout

        self._machine = ConnectionStateMachine()
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._connection: Any | None = None
        self._reader_thread: threading.Thread | None = None
        self._generation = 0
        self._callbacks_suppressed = False
        self._drop_logged = False

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._machine.state

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._machine.is_connected

    @property
    def last_reason(self) -> str | None:
        with self._lock:
            return self._machine.last_reason

    @property
    def attempts(self) -> int:
        with self._lock:
            return self._machine.attempts

    @property
    def muted(self) -> bool:
        return self._muted

    def set_muted(self, muted: bool) -> None:
        """Takes effect with the next setup handshake."""
        self._muted = muted

    def set_audio_sink(self, audio_sink: Optional[AudioSink]) -> None:
        self._audio_sink = audio_sink

    def recent_transitions(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._machine.recent_transitions())

    def connect(self) -> bool:
        with self._lock:
            if self._machine.is_active:
                logger.info("Live session is already %s", self._machine.state.value)
                return False
            self._machine.transition(SessionState.CONNECTING)
            self._generation += 1
            generation = self._generation
            self._callbacks_suppressed = False

        thread = threading.Thread(
            target=self._run,
            args=(generation,),
            name="iris-live-session",
            daemon=True,
        )
        self._reader_thread = thread
        thread.start()
        return True

    def disconnect(self, *, silent: bool = False, timeout: float = 2.0) -> None:
        """Close the websocket.

        With ``silent`` the host callback is muted from here on, which is
        what shutdown wants.
        """
        with self._lock:
            if silent:
                self._callbacks_suppressed = True
            connection = self._connection
            self._connection = None
            self._generation += 1
            was_connected = self._machine.is_connected
            if self._machine.state is not SessionState.DISCONNECTED:
                self._machine.transition(SessionState.DISCONNECTED, reason="closed by client")

        if connection is not None:
            try:
                connection.close()
            except Exception as exc:  # pragma: no cover - depends on socket state
                logger.debug("Error while closing Live API websocket: %s", exc)

        reader = self._reader_thread
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout)
        self._reader_thread = None

        if was_connected:
            logger.info("Live API websocket closed by client")
            self._notify("Websocket disconnected: closed by client", MessageType.CONNECTION)

    def send(self, payload: str | bytes) -> bool:
        with self._lock:
            connection = self._connection if self._machine.is_connected else None
            if connection is None:
                if not self._drop_logged:
                    self._drop_logged = True
                    logger.info(
                        "Live session is %s; dropping outbound messages until reconnected",
                        self._machine.state.value,
                    )
                else:
                    logger.debug("Dropped outbound message while %s", self._machine.state.value)
                return False

        with self._send_lock:
            try:
                connection.send(payload)
            except ConnectionClosed:
                logger.info("Dropped outbound message; the websocket closed during send")
                return False
            except Exception as exc:
                logger.warning("Failed to send to Live API: %s", exc)
                return False
        return True

    def dispatch(self, raw: str | bytes) -> None:
        """Route one inbound frame to the host callback and the audio sink."""
        try:
            content = decode(raw)
        except ProtocolError as exc:
            logger.warning("Dropping Live API frame: %s", exc)
            return

        if content.transcript:
            logger.debug("Transcript: %s", content.transcript)
            self._notify(content.transcript, MessageType.TRANSCRIPT)
        for text in content.texts:
            if text:
                self._notify(text, MessageType.TEXT)
        for data_b64 in content.audio_chunks:
            try:
                pcm = b64decode(data_b64)
            except ProtocolError:
                logger.warning("Skipping inline audio with an invalid base64 payload")
                continue
            if self._audio_sink is not None:
                self._audio_sink(pcm)

    def _run(self, generation: int) -> None:
        logger.info("Connecting to %s", redact_url(self.url))
        try:
            connection = self._connector(
                self.url,
                additional_headers={"Content-Type": "application/json"},
                open_timeout=self._open_timeout,
                max_size=16 * 1024 * 1024,
            )
        except Exception as exc:
            self._on_failure(generation, exc)
            return

        # Held until the setup is sent so it is the first frame on the wire.
        with self._send_lock:
            with self._lock:
                current = generation == self._generation and self._machine.state is SessionState.CONNECTING
                if current:
                    self._connection = connection
                    self._machine.transition(SessionState.CONNECTED, reason="handshake complete")
                    self._drop_logged = False
            if not current:
                logger.info("Discarding a Live API connection that completed after disconnect")
                connection.close()
                return
            try:
                connection.send(encode_setup(self._muted, self.model_id))
            except Exception as exc:
                setup_error = exc
            else:
                setup_error = None

        if setup_error is not None:
            self._on_failure(generation, setup_error)
            return

        logger.info("Live API websocket connected")
        self._notify("Websocket connected", MessageType.CONNECTION)
        self._reader_loop(generation, connection)

    def _reader_loop(self, generation: int, connection: Any) -> None:
        try:
            for raw in connection:
                self.dispatch(raw)
        except ConnectionClosedOK as exc:
            self._on_closed(generation, _closed_reason(exc))
        except ConnectionClosed as exc:
            self._on_failure(generation, exc)
        except Exception as exc:
            logger.exception("Live API reader failed: %s", exc)
            self._on_failure(generation, exc)
        else:
            self._on_closed(generation, _close_reason(connection))

    def _on_closed(self, generation: int, reason: str) -> None:
        with self._lock:
            if generation != self._generation or not self._machine.is_connected:
                return
            self._machine.transition(SessionState.DISCONNECTED, reason=reason or "closed by server")
            self._connection = None
        logger.info("Live API websocket closed: %s", reason)
        self._notify(f"Websocket disconnected: {reason}", MessageType.CONNECTION)

    def _on_failure(self, generation: int, exc: BaseException) -> None:
        detail = str(exc) or type(exc).__name__
        with self._lock:
            if generation != self._generation or not self._machine.is_active:
                return
            connection = self._connection
            self._connection = None
            self._machine.transition(SessionState.ERROR, reason=detail)
        if connection is not None:
            try:
                connection.close()
            except Exception:  # pragma: no cover - depends on socket state
                logger.debug("Error while closing failed websocket", exc_info=True)
        logger.error("Live API websocket error: %s", detail)
        self._notify(f"Websocket error: {detail}", MessageType.ERROR)

    def _notify(self, message: str, message_type: MessageType) -> None:
        callback = self._callback
        if callback is None or self._callbacks_suppressed:
            return
        try:
            callback(message, message_type)
        except Exception:
            logger.exception("Host callback failed for %s event", message_type.value)
