"""Message protocol definitions for Iris Live.

Two boundaries are described here.  The first is the Gemini Live wire
protocol: a setup envelope sent once per connection, ``realtime_input``
media chunks carrying base64 audio or JPEG frames, and ``serverContent``
responses that may carry an output transcription, model text and inline
24 kHz PCM audio.  The second is the host bridge: the JSON messages an
embedding host sends to drive the engine, and the callback event types
it receives back.

Encoding and decoding are pure transforms.  Nothing in this module
touches sockets or devices.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional


# Types of messages sent by the embedding host
HOST_START = "host.start"
HOST_STOP = "host.stop"
HOST_START_RECORDING = "host.start_recording"
HOST_STOP_RECORDING = "host.stop_recording"
HOST_START_CAMERA = "host.start_camera"
HOST_STOP_CAMERA = "host.stop_camera"
HOST_SEND_IMAGE = "host.send_image"
HOST_SET_MUTED = "host.set_muted"
HOST_STATUS = "host.status"
HOST_CLEANUP = "host.cleanup"

# Media types on the Live API wire
AUDIO_PCM_MIME = "audio/pcm"
IMAGE_JPEG_MIME = "image/jpeg"
OUTPUT_AUDIO_MIME = "audio/pcm;rate=24000"


class ProtocolError(ValueError):
    """Raised when an inbound frame cannot be parsed."""


class MessageType(str, Enum):
    """Kinds of events delivered to the host callback."""

    CONNECTION = "connection"
    ERROR = "error"
    TRANSCRIPT = "transcript"
    TEXT = "text"


MessageCallback = Callable[[str, MessageType], None]


@dataclass(frozen=True)
class SetupRequest:
    """The first message of every Live API connection."""

    model: str
    response_modalities: List[str]
    wants_transcription: bool

    def to_payload(self) -> dict[str, Any]:
        setup: dict[str, Any] = {
            "model": self.model,
            "generationConfig": {"responseModalities": list(self.response_modalities)},
        }
        if self.wants_transcription:
            setup["outputAudioTranscription"] = {}
        return {"setup": setup}


@dataclass(frozen=True)
class MediaChunkRequest:
    """One base64 media chunk for the ``realtime_input`` stream."""

    mime_type: str
    data: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "realtime_input": {
                "media_chunks": [{"mime_type": self.mime_type, "data": self.data}],
            }
        }


@dataclass
class ServerContent:
    """Events carried by one inbound ``serverContent`` message.

    Every field is optional and independent of the others.  ``texts``
    and ``audio_chunks`` keep the order in which the parts appeared.
    ``audio_chunks`` holds base64 strings as received.
    """

    transcript: Optional[str] = None
    texts: List[str] = field(default_factory=list)
    audio_chunks: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.transcript and not self.texts and not self.audio_chunks


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError("Invalid base64 payload") from exc


def build_setup(muted: bool, model: str) -> SetupRequest:
    if muted:
        return SetupRequest(model=model, response_modalities=["TEXT"], wants_transcription=False)
    return SetupRequest(model=model, response_modalities=["TEXT", "AUDIO"], wants_transcription=True)


def encode_setup(muted: bool, model: str) -> str:
    return json.dumps(build_setup(muted, model).to_payload())


def encode_media_chunk(data_b64: str, mime_type: str) -> str:
    return json.dumps(MediaChunkRequest(mime_type=mime_type, data=data_b64).to_payload())


def _object_field(payload: dict[str, Any], name: str) -> Optional[dict[str, Any]]:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ProtocolError(f"Expected an object for {name}")
    return value


def decode(raw: str | bytes) -> ServerContent:
    """Parse one inbound Live API frame.

    Frames without ``serverContent`` (``setupComplete``, usage metadata,
    and so on) decode to an empty :class:`ServerContent`.  Inline data
    with a mime type other than 24 kHz PCM is ignored.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Binary frame is not UTF-8 JSON") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Malformed JSON frame: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("Top-level frame must be a JSON object")

    content = ServerContent()
    server_content = _object_field(payload, "serverContent")
    if server_content is None:
        return content

    transcription = _object_field(server_content, "outputTranscription")
    if transcription is not None:
        text = transcription.get("text")
        if isinstance(text, str) and text:
            content.transcript = text

    model_turn = _object_field(server_content, "modelTurn")
    if model_turn is None:
        return content

    parts = model_turn.get("parts") or []
    if not isinstance(parts, list):
        raise ProtocolError("Expected a list for modelTurn.parts")
    for part in parts:
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if isinstance(text, str):
            content.texts.append(text)
        inline_data = part.get("inlineData")
        if not isinstance(inline_data, dict):
            continue
        if inline_data.get("mimeType") != OUTPUT_AUDIO_MIME:
            continue
        data = inline_data.get("data")
        if isinstance(data, str) and data:
            content.audio_chunks.append(data)
    return content
