"""musync storage layer: async SQLite database for playlists and sync state."""

from musync.storage.database import Database, PlaylistNotFound, TrackNotFound
from musync.storage.models import (
    PlatformConnection,
    Playlist,
    PlaylistTrack,
    SyncRun,
)

__all__ = [
    "Database",
    "PlatformConnection",
    "Playlist",
    "PlaylistNotFound",
    "PlaylistTrack",
    "SyncRun",
    "TrackNotFound",
]
