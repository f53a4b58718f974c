"""Spotify Web API adapter.

Endpoints:
- GET /playlists/{id}/tracks (paginated, limit 100)
- GET /playlists/{id}?fields=tracks.total
- POST /playlists/{id}/tracks (body: {"uris": [...]}, max 100 per call)
- DELETE /playlists/{id}/tracks (body: {"tracks": [{"uri": ...}]}, max 100 per call)
- GET /search (limit max 10)
- GET /me, POST /users/{user_id}/playlists
"""

from __future__ import annotations

import structlog

from musync.sync.client import ResilientClient
from musync.sync.differ import Track, track_match_score
from musync.sync.quota import OperationType, QuotaTracker

log = structlog.get_logger(__name__)

_API_BASE = "https://api.spotify.com/v1"
_PAGE_SIZE = 100
_BATCH_SIZE = 100
_SEARCH_LIMIT = 10


def _track_from_api(track: dict, added_at: str | None = None) -> Track | None:
    if not track or not track.get("id"):
        return None  # local files and unavailable tracks carry no ID
    artists = track.get("artists") or []
    duration_ms = track.get("duration_ms")
    return Track(
        title=track.get("name") or "Unknown",
        artist=", ".join(a["name"] for a in artists if a.get("name")) or "Unknown",
        album=(track.get("album") or {}).get("name"),
        duration_seconds=duration_ms // 1000 if duration_ms is not None else None,
        platform_id=track["id"],
        platform="spotify",
        added_at=added_at,
    )


def _uri(track: Track) -> str:
    return f"spotify:track:{track.platform_id}"


class SpotifyAdapter:
    """Maps Spotify playlist endpoints onto the canonical :class:`Track` shape."""

    platform = "spotify"
    max_batch_size = _BATCH_SIZE

    def __init__(self, client: ResilientClient) -> None:
        self._client = client

    async def __aenter__(self) -> SpotifyAdapter:
        await self._client.__aenter__()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self._client.__aexit__(*exc)

    @property
    def quota(self) -> QuotaTracker:
        return self._client.quota

    def playlist_url(self, playlist_id: str) -> str:
        return f"https://open.spotify.com/playlist/{playlist_id}"

    async def fetch_tracks(self, playlist_id: str, token: str | None) -> list[Track]:
        """Fetch every track of a playlist, following pagination."""
        tracks: list[Track] = []
        offset = 0

        while True:
            resp = await self._client.call(
                "GET",
                f"{_API_BASE}/playlists/{playlist_id}/tracks",
                credentials=token,
                op_type=OperationType.READ_LIGHT,
                params={"limit": _PAGE_SIZE, "offset": offset},
            )
            data = resp.json()

            page_items = data.get("items", [])
            for item in page_items:
                track = _track_from_api(item.get("track"), item.get("added_at"))
                if track is not None:
                    tracks.append(track)

            if not page_items or data.get("next") is None:
                break
            offset += _PAGE_SIZE

        return tracks

    async def track_count(self, playlist_id: str, token: str | None) -> int:
        resp = await self._client.call(
            "GET",
            f"{_API_BASE}/playlists/{playlist_id}",
            credentials=token,
            op_type=OperationType.READ_LIGHT,
            params={"fields": "tracks.total"},
        )
        return int(resp.json().get("tracks", {}).get("total", 0))

    async def search_track(self, track: Track, token: str | None) -> Track | None:
        """Search Spotify for *track* and return the best-scoring result, if any."""
        query = f"track:{track.title} artist:{track.artist}"
        resp = await self._client.call(
            "GET",
            f"{_API_BASE}/search",
            credentials=token,
            op_type=OperationType.READ_HEAVY,
            params={"q": query, "type": "track", "limit": _SEARCH_LIMIT},
        )
        items = resp.json().get("tracks", {}).get("items", [])
        candidates = [t for t in (_track_from_api(i) for i in items) if t is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda c: track_match_score(track, c))

    async def add_tracks(self, playlist_id: str, tracks: list[Track], token: str | None) -> int:
        """Append resolved tracks to the playlist in batches of 100."""
        uris = [_uri(t) for t in tracks if t.platform_id]
        for i in range(0, len(uris), _BATCH_SIZE):
            batch = uris[i : i + _BATCH_SIZE]
            await self._client.call(
                "POST",
                f"{_API_BASE}/playlists/{playlist_id}/tracks",
                credentials=token,
                op_type=OperationType.WRITE,
                json={"uris": batch},
            )
        return len(uris)

    async def remove_tracks(self, playlist_id: str, tracks: list[Track], token: str | None) -> int:
        """Remove every occurrence of the given tracks, in batches of 100."""
        uris = [_uri(t) for t in tracks if t.platform_id]
        for i in range(0, len(uris), _BATCH_SIZE):
            batch = uris[i : i + _BATCH_SIZE]
            await self._client.call(
                "DELETE",
                f"{_API_BASE}/playlists/{playlist_id}/tracks",
                credentials=token,
                op_type=OperationType.DELETE,
                json={"tracks": [{"uri": u} for u in batch]},
            )
        return len(uris)

    async def create_playlist(
        self,
        name: str,
        description: str,
        public: bool,
        token: str | None,
    ) -> str:
        """Create a playlist for the current user and return its ID."""
        me = await self._client.call(
            "GET",
            f"{_API_BASE}/me",
            credentials=token,
            op_type=OperationType.READ_LIGHT,
        )
        user_id = me.json()["id"]
        resp = await self._client.call(
            "POST",
            f"{_API_BASE}/users/{user_id}/playlists",
            credentials=token,
            op_type=OperationType.WRITE,
            json={"name": name, "description": description, "public": public},
        )
        playlist_id = resp.json()["id"]
        log.info("spotify_playlist_created", playlist_id=playlist_id, name=name)
        return playlist_id
