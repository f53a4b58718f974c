"""Async SQLite database for the musync storage layer."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from musync.storage.models import (
    PLATFORMS,
    PlatformConnection,
    Playlist,
    PlaylistTrack,
    SyncRun,
)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS playlist (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    is_public INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS playlist_track (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    playlist_id INTEGER NOT NULL REFERENCES playlist(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    title TEXT NOT NULL,
    artist TEXT NOT NULL,
    album TEXT,
    duration_seconds INTEGER CHECK(duration_seconds IS NULL OR duration_seconds >= 0),
    added_at TEXT,
    spotify_id TEXT,
    youtube_id TEXT
);

CREATE INDEX IF NOT EXISTS ix_playlist_track_playlist
    ON playlist_track(playlist_id, position);

CREATE TABLE IF NOT EXISTS platform_connection (
    playlist_id INTEGER NOT NULL REFERENCES playlist(id) ON DELETE CASCADE,
    platform TEXT NOT NULL CHECK(platform IN ('spotify', 'youtube')),
    platform_playlist_id TEXT NOT NULL,
    last_synced_at TEXT,
    sync_status TEXT NOT NULL DEFAULT 'pending' CHECK(sync_status IN (
        'pending', 'synced', 'partial', 'failed'
    )),
    sync_error TEXT,
    synced_ids TEXT NOT NULL DEFAULT '[]',
    remote_url TEXT,
    PRIMARY KEY (playlist_id, platform)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    playlist_id INTEGER NOT NULL REFERENCES playlist(id) ON DELETE CASCADE,
    platform TEXT NOT NULL CHECK(platform IN ('spotify', 'youtube')),
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL CHECK(status IN (
        'running', 'synced', 'partial', 'warning', 'failed'
    )),
    stats_json TEXT,
    error_message TEXT
);
"""


class PlaylistNotFound(Exception):
    """Raised when a playlist ID does not exist in the local database."""

    def __init__(self, playlist_id: int) -> None:
        super().__init__(f"Playlist {playlist_id} not found")
        self.playlist_id = playlist_id


class TrackNotFound(Exception):
    """Raised when a track ID does not belong to the given playlist."""

    def __init__(self, playlist_id: int, track_id: int) -> None:
        super().__init__(f"Track {track_id} not found in playlist {playlist_id}")
        self.playlist_id = playlist_id
        self.track_id = track_id


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _id_column(platform: str) -> str:
    if platform not in PLATFORMS:
        msg = f"Unknown platform: {platform}"
        raise ValueError(msg)
    return f"{platform}_id"


class Database:
    """Async SQLite database wrapper for musync."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # -- playlist -------------------------------------------------------------

    async def create_playlist(
        self,
        *,
        name: str,
        description: str = "",
        is_public: bool = False,
    ) -> Playlist:
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO playlist (name, description, is_public, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            RETURNING *
            """,
            (name, description, int(is_public), now, now),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_playlist(row)

    async def load_playlist(self, playlist_id: int) -> Playlist:
        """Load a playlist with its ordered tracks and platform connections."""
        cur = await self.conn.execute("SELECT * FROM playlist WHERE id = ?", (playlist_id,))
        row = await cur.fetchone()
        if row is None:
            raise PlaylistNotFound(playlist_id)

        playlist = self._row_to_playlist(row)
        cur = await self.conn.execute(
            "SELECT * FROM playlist_track WHERE playlist_id = ? ORDER BY position, id",
            (playlist_id,),
        )
        playlist.tracks = [self._row_to_track(r) for r in await cur.fetchall()]

        cur = await self.conn.execute(
            "SELECT * FROM platform_connection WHERE playlist_id = ? ORDER BY platform",
            (playlist_id,),
        )
        playlist.connections = {
            r["platform"]: self._row_to_connection(r) for r in await cur.fetchall()
        }
        return playlist

    async def list_playlists(self) -> list[Playlist]:
        """Return playlist metadata and connections (tracks are not loaded)."""
        cur = await self.conn.execute("SELECT * FROM playlist ORDER BY id")
        playlists = [self._row_to_playlist(r) for r in await cur.fetchall()]

        cur = await self.conn.execute("SELECT * FROM platform_connection ORDER BY platform")
        by_playlist: dict[int, dict[str, PlatformConnection]] = {}
        for r in await cur.fetchall():
            by_playlist.setdefault(r["playlist_id"], {})[r["platform"]] = self._row_to_connection(r)
        for p in playlists:
            p.connections = by_playlist.get(p.id, {})
        return playlists

    async def save_playlist(self, playlist: Playlist) -> Playlist:
        """Persist metadata, tracks and connections of an existing playlist.

        Tracks without an ``id`` are inserted; tracks with one are updated.
        Rows missing from ``playlist.tracks`` are left untouched.
        """
        if playlist.id is None:
            msg = "save_playlist requires a playlist created with create_playlist()"
            raise ValueError(msg)

        cur = await self.conn.execute(
            """
            UPDATE playlist SET name = ?, description = ?, is_public = ?, updated_at = ?
            WHERE id = ?
            """,
            (playlist.name, playlist.description, int(playlist.is_public), _now_iso(), playlist.id),
        )
        if cur.rowcount == 0:
            raise PlaylistNotFound(playlist.id)

        position = 0
        for track in playlist.tracks:
            if track.id is None:
                await self._insert_track(playlist.id, position, track)
            else:
                await self.conn.execute(
                    """
                    UPDATE playlist_track SET position = ?, title = ?, artist = ?, album = ?,
                        duration_seconds = ?, added_at = ?, spotify_id = ?, youtube_id = ?
                    WHERE id = ? AND playlist_id = ?
                    """,
                    (
                        position,
                        track.title,
                        track.artist,
                        track.album,
                        track.duration_seconds,
                        _iso(track.added_at),
                        track.platform_ids.get("spotify"),
                        track.platform_ids.get("youtube"),
                        track.id,
                        playlist.id,
                    ),
                )
            position += 1

        for connection in playlist.connections.values():
            await self._upsert_connection(playlist.id, connection)

        await self.conn.commit()
        return await self.load_playlist(playlist.id)

    async def update_playlist(
        self,
        playlist_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
        is_public: bool | None = None,
    ) -> Playlist:
        """Change playlist metadata; ``None`` leaves a field as it is."""
        current = await self.load_playlist(playlist_id)
        await self.conn.execute(
            """
            UPDATE playlist SET name = ?, description = ?, is_public = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                current.name if name is None else name,
                current.description if description is None else description,
                int(current.is_public if is_public is None else is_public),
                _now_iso(),
                playlist_id,
            ),
        )
        await self.conn.commit()
        return await self.load_playlist(playlist_id)

    async def delete_playlist(self, playlist_id: int) -> None:
        """Delete a playlist with its tracks, connections and sync history."""
        cur = await self.conn.execute("DELETE FROM playlist WHERE id = ?", (playlist_id,))
        if cur.rowcount == 0:
            raise PlaylistNotFound(playlist_id)
        await self.conn.commit()

    # -- playlist_track -------------------------------------------------------

    async def _insert_track(self, playlist_id: int, position: int, track: PlaylistTrack) -> PlaylistTrack:
        cur = await self.conn.execute(
            """
            INSERT INTO playlist_track (
                playlist_id, position, title, artist, album, duration_seconds,
                added_at, spotify_id, youtube_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            (
                playlist_id,
                position,
                track.title,
                track.artist,
                track.album,
                track.duration_seconds,
                _iso(track.added_at) or _now_iso(),
                track.platform_ids.get("spotify"),
                track.platform_ids.get("youtube"),
            ),
        )
        return self._row_to_track(await cur.fetchone())

    async def add_tracks(self, playlist_id: int, tracks: list[PlaylistTrack]) -> list[PlaylistTrack]:
        """Append tracks to the end of a playlist and return them with IDs."""
        cur = await self.conn.execute(
            "SELECT COALESCE(MAX(position), -1) AS last FROM playlist_track WHERE playlist_id = ?",
            (playlist_id,),
        )
        position = (await cur.fetchone())["last"] + 1

        added: list[PlaylistTrack] = []
        for track in tracks:
            added.append(await self._insert_track(playlist_id, position, track))
            position += 1
        await self.conn.execute(
            "UPDATE playlist SET updated_at = ? WHERE id = ?", (_now_iso(), playlist_id)
        )
        await self.conn.commit()
        return added

    async def remove_track(self, playlist_id: int, track_id: int) -> PlaylistTrack:
        """Delete one track and close the gap in positions."""
        cur = await self.conn.execute(
            "DELETE FROM playlist_track WHERE id = ? AND playlist_id = ? RETURNING *",
            (track_id, playlist_id),
        )
        row = await cur.fetchone()
        if row is None:
            await self.load_playlist(playlist_id)
            raise TrackNotFound(playlist_id, track_id)

        await self.conn.execute(
            "UPDATE playlist_track SET position = position - 1 WHERE playlist_id = ? AND position > ?",
            (playlist_id, row["position"]),
        )
        await self.conn.execute(
            "UPDATE playlist SET updated_at = ? WHERE id = ?", (_now_iso(), playlist_id)
        )
        await self.conn.commit()
        return self._row_to_track(row)

    async def set_track_platform_id(self, track_id: int, platform: str, platform_id: str | None) -> None:
        column = _id_column(platform)
        await self.conn.execute(
            f"UPDATE playlist_track SET {column} = ? WHERE id = ?",  # noqa: S608
            (platform_id, track_id),
        )
        await self.conn.commit()

    # -- platform_connection --------------------------------------------------

    async def _upsert_connection(self, playlist_id: int, connection: PlatformConnection) -> None:
        await self.conn.execute(
            """
            INSERT INTO platform_connection (
                playlist_id, platform, platform_playlist_id, last_synced_at,
                sync_status, sync_error, synced_ids, remote_url
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (playlist_id, platform) DO UPDATE SET
                platform_playlist_id = excluded.platform_playlist_id,
                last_synced_at = excluded.last_synced_at,
                sync_status = excluded.sync_status,
                sync_error = excluded.sync_error,
                synced_ids = excluded.synced_ids,
                remote_url = COALESCE(excluded.remote_url, platform_connection.remote_url)
            """,
            (
                playlist_id,
                connection.platform,
                connection.platform_playlist_id,
                _iso(connection.last_synced_at),
                connection.sync_status,
                connection.sync_error,
                json.dumps(connection.synced_ids),
                connection.remote_url,
            ),
        )

    async def update_sync_state(self, playlist_id: int, connection: PlatformConnection) -> None:
        await self._upsert_connection(playlist_id, connection)
        await self.conn.commit()

    async def get_sync_state(self, playlist_id: int, platform: str) -> PlatformConnection | None:
        cur = await self.conn.execute(
            "SELECT * FROM platform_connection WHERE playlist_id = ? AND platform = ?",
            (playlist_id, platform),
        )
        row = await cur.fetchone()
        return self._row_to_connection(row) if row else None

    async def delete_sync_state(self, playlist_id: int, platform: str) -> bool:
        """Forget the connection to *platform*; returns False if there was none."""
        _id_column(platform)
        cur = await self.conn.execute(
            "DELETE FROM platform_connection WHERE playlist_id = ? AND platform = ?",
            (playlist_id, platform),
        )
        await self.conn.commit()
        return cur.rowcount > 0

    # -- sync_runs ------------------------------------------------------------

    async def start_sync_run(self, *, playlist_id: int, platform: str) -> SyncRun:
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO sync_runs (playlist_id, platform, started_at, status)
            VALUES (?, ?, ?, 'running')
            RETURNING *
            """,
            (playlist_id, platform, now),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_sync_run(row)

    async def finish_sync_run(
        self,
        run_id: int,
        *,
        status: str,
        stats_json: str | None = None,
        error_message: str | None = None,
    ) -> SyncRun:
        now = _now_iso()
        cur = await self.conn.execute(
            """
            UPDATE sync_runs SET finished_at = ?, status = ?, stats_json = ?, error_message = ?
            WHERE id = ?
            RETURNING *
            """,
            (now, status, stats_json, error_message, run_id),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_sync_run(row)

    async def list_sync_runs(self, *, limit: int = 20, playlist_id: int | None = None) -> list[SyncRun]:
        if playlist_id is not None:
            cur = await self.conn.execute(
                "SELECT * FROM sync_runs WHERE playlist_id = ? ORDER BY id DESC LIMIT ?",
                (playlist_id, limit),
            )
        else:
            cur = await self.conn.execute(
                "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
            )
        rows = await cur.fetchall()
        return [self._row_to_sync_run(r) for r in rows]

    # -- row → model helpers --------------------------------------------------

    @staticmethod
    def _row_to_playlist(row: aiosqlite.Row) -> Playlist:
        return Playlist(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            is_public=bool(row["is_public"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_track(row: aiosqlite.Row) -> PlaylistTrack:
        return PlaylistTrack(
            id=row["id"],
            title=row["title"],
            artist=row["artist"],
            album=row["album"],
            duration_seconds=row["duration_seconds"],
            added_at=row["added_at"],
            platform_ids={p: row[f"{p}_id"] for p in PLATFORMS if row[f"{p}_id"]},
        )

    @staticmethod
    def _row_to_connection(row: aiosqlite.Row) -> PlatformConnection:
        return PlatformConnection(
            platform=row["platform"],
            platform_playlist_id=row["platform_playlist_id"],
            last_synced_at=row["last_synced_at"],
            sync_status=row["sync_status"],
            sync_error=row["sync_error"],
            synced_ids=json.loads(row["synced_ids"] or "[]"),
            remote_url=row["remote_url"],
        )

    @staticmethod
    def _row_to_sync_run(row: aiosqlite.Row) -> SyncRun:
        return SyncRun(
            id=row["id"],
            playlist_id=row["playlist_id"],
            platform=row["platform"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            status=row["status"],
            stats_json=row["stats_json"],
            error_message=row["error_message"],
        )
