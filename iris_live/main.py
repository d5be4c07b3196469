"""Host bridge for Iris Live.

The embedding host (a game engine) connects to ``/ws/host``, drives one
:class:`LiveEngine` with ``host.*`` messages and receives callback events
as ``{"type": ..., "message": ...}`` objects.  The engine lives exactly as
long as the host connection; only one host may be connected at a time.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import logging
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from .engine import LiveEngine
from .live.protocol import (
    HOST_CLEANUP,
    HOST_SEND_IMAGE,
    HOST_SET_MUTED,
    HOST_START,
    HOST_START_CAMERA,
    HOST_START_RECORDING,
    HOST_STATUS,
    HOST_STOP,
    HOST_STOP_CAMERA,
    HOST_STOP_RECORDING,
    MessageType,
)
from .schemas import EngineStatus
from .settings import settings


logger = logging.getLogger("iris-live")

app = FastAPI(title="Iris Live Host Bridge", version="0.1.0")
app.state.engine = None

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

SIMPLE_COMMANDS = {
    HOST_START: "start",
    HOST_STOP: "stop",
    HOST_START_RECORDING: "start_recording",
    HOST_STOP_RECORDING: "stop_recording",
    HOST_START_CAMERA: "start_camera",
    HOST_STOP_CAMERA: "stop_camera",
}


@app.on_event("startup")
async def startup_event() -> None:
    """Apply the configured log level."""
    logger.setLevel(settings.log_level.upper())
    logger.info(
        "Host bridge ready; model=%s muted=%s camera=%s",
        settings.model_id,
        settings.muted,
        settings.camera_index,
    )


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health endpoint to confirm the bridge is up."""
    return {"status": "ok"}


@app.get("/api/status", response_model=EngineStatus)
async def engine_status() -> EngineStatus:
    """Report the state of the engine owned by the connected host, if any."""
    engine: LiveEngine | None = app.state.engine
    if engine is None:
        return EngineStatus(active=False)
    return engine.status()


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {raw}")


def _decode_b64_payload(message: dict, field_name: str = "data_b64") -> bytes:
    data_b64 = message.get(field_name)
    if not isinstance(data_b64, str) or not data_b64:
        raise ValueError(f"Missing {field_name}")
    try:
        return base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 payload in {field_name}") from exc


async def _handle_host_message(engine: LiveEngine, message_type: str, message: dict) -> dict[str, Any] | None:
    if message_type in SIMPLE_COMMANDS:
        await asyncio.to_thread(getattr(engine, SIMPLE_COMMANDS[message_type]))
        return None
    if message_type == HOST_SEND_IMAGE:
        engine.send_image(_decode_b64_payload(message))
        return None
    if message_type == HOST_SET_MUTED:
        muted = message.get("muted")
        if not isinstance(muted, bool):
            raise ValueError("muted must be a boolean")
        engine.set_muted(muted)
        return None
    if message_type == HOST_STATUS:
        return {"type": "status", **engine.status().model_dump()}
    raise ValueError(f"Unsupported message type: {message_type}")


async def _forward_engine_events(ws: WebSocket, events: asyncio.Queue[dict[str, str]]) -> None:
    while True:
        event = await events.get()
        try:
            await ws.send_json(event)
        except (WebSocketDisconnect, RuntimeError):
            return


@app.websocket("/ws/host")
async def host_endpoint(ws: WebSocket) -> None:
    """Drive one engine for the lifetime of this host connection."""
    await ws.accept()

    if app.state.engine is not None:
        await ws.send_json({"type": "error", "message": "Another host is already connected"})
        await ws.close(code=1013)
        return

    api_key = ws.query_params.get("api_key", "").strip() or settings.api_key
    if not api_key:
        await ws.send_json({"type": "error", "message": "Missing API key"})
        await ws.close(code=1008)
        return

    muted_raw = ws.query_params.get("muted", "").strip()
    try:
        muted = _parse_bool(muted_raw) if muted_raw else settings.muted
    except ValueError as exc:
        await ws.send_json({"type": "error", "message": str(exc)})
        await ws.close(code=1008)
        return

    loop = asyncio.get_running_loop()
    events: asyncio.Queue[dict[str, str]] = asyncio.Queue()

    def on_message(message: str, message_type: MessageType) -> None:
        # Called from engine worker threads.
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(
                events.put_nowait, {"type": message_type.value, "message": message}
            )

    engine = LiveEngine(settings, callback=on_message, api_key=api_key, muted=muted)
    app.state.engine = engine
    forward_task = asyncio.create_task(_forward_engine_events(ws, events))
    logger.info("Host connected; engine created (muted=%s)", muted)

    try:
        while True:
            try:
                message = await ws.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, TypeError):
                await ws.send_json({"type": "error", "message": "Malformed JSON message"})
                continue

            if not isinstance(message, dict):
                await ws.send_json({"type": "error", "message": "Messages must be JSON objects"})
                continue

            message_type = str(message.get("type", "")).strip()
            if message_type == HOST_CLEANUP:
                break
            try:
                reply = await _handle_host_message(engine, message_type, message)
                if reply is not None:
                    await ws.send_json(reply)
            except ValueError as exc:
                await ws.send_json({"type": "error", "message": str(exc)})
            except Exception as exc:
                logger.exception("Host message handling failed: %s", exc)
                await ws.send_json({"type": "error", "message": "Failed to process host message"})
    except Exception as exc:
        logger.exception("Unexpected error in /ws/host: %s", exc)
    finally:
        app.state.engine = None
        await asyncio.to_thread(engine.clean_up)
        forward_task.cancel()
        try:
            await forward_task
        except asyncio.CancelledError:
            pass
        with contextlib.suppress(RuntimeError):
            await ws.close()
        logger.info("Host disconnected; engine cleaned up")
