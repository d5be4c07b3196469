"""Pydantic schemas for the host bridge.

`EngineStatus` is what the host sees when it asks for the engine state,
either through the `host.status` websocket message or `GET /api/status`.
"""

from typing import Optional

from pydantic import BaseModel, Field


class EngineStatus(BaseModel):
    """Snapshot of one engine's connection and capture state."""

    active: bool = Field(True, description="Whether a host currently owns an engine")
    state: str = Field("disconnected", description="Session state (disconnected, connecting, connected, error)")
    connected: bool = False
    recording: bool = False
    camera_active: bool = False
    muted: bool = False
    playback_queued: int = Field(0, description="Audio chunks waiting for playback")
    connect_attempts: int = Field(0, description="Connection attempts made by this engine")
    last_reason: Optional[str] = Field(None, description="Reason recorded with the last state change")
