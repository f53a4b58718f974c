"""Pydantic models for the musync storage layer."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

PlatformName = Literal["spotify", "youtube"]
ConnectionStatus = Literal["pending", "synced", "partial", "failed"]
RunStatus = Literal["running", "synced", "partial", "warning", "failed"]

PLATFORMS: tuple[str, ...] = ("spotify", "youtube")


class PlaylistTrack(BaseModel):
    """A track of the local playlist with its known per-platform IDs."""

    id: int | None = None
    title: str
    artist: str
    album: str | None = None
    duration_seconds: int | None = Field(default=None, ge=0)
    added_at: datetime | None = None
    platform_ids: dict[str, str] = Field(default_factory=dict)


class PlatformConnection(BaseModel):
    """Sync state of the local playlist on one remote platform."""

    platform: PlatformName
    platform_playlist_id: str
    last_synced_at: datetime | None = None
    sync_status: ConnectionStatus = "pending"
    sync_error: str | None = None
    synced_ids: list[str] = Field(default_factory=list)
    remote_url: str | None = None


class Playlist(BaseModel):
    """The local (canonical) playlist."""

    id: int | None = None
    name: str
    description: str = ""
    is_public: bool = False
    tracks: list[PlaylistTrack] = Field(default_factory=list)
    connections: dict[str, PlatformConnection] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SyncRun(BaseModel):
    """Record of one reconciliation attempt against one platform."""

    id: int | None = None
    playlist_id: int
    platform: PlatformName
    started_at: datetime
    finished_at: datetime | None = None
    status: RunStatus
    stats_json: str | None = None
    error_message: str | None = None
