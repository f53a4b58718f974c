"""YouTube Data API v3 adapter.

Endpoints (quota cost in units):
- GET playlistItems (1, paginated, maxResults 50)
- GET videos (1, durations for up to 50 IDs)
- GET playlists (1, item count)
- GET search (100, type=video, music category)
- POST playlistItems (50, one video per call)
- DELETE playlistItems (50, one entry per call)
- POST playlists (50)

Videos have no separate artist field. Titles shaped like ``Artist - Title``
are split; otherwise the uploading channel stands in for the artist.
"""

from __future__ import annotations

import re
from dataclasses import replace

import structlog

from musync.sync.client import ResilientClient
from musync.sync.differ import Track, track_match_score
from musync.sync.quota import OperationType, QuotaTracker

log = structlog.get_logger(__name__)

_API_BASE = "https://www.googleapis.com/youtube/v3"
_PAGE_SIZE = 50
_SEARCH_LIMIT = 10
_MUSIC_CATEGORY = "10"

_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
_TOPIC_SUFFIX = " - Topic"


def parse_duration(value: str | None) -> int | None:
    """Convert an ISO 8601 duration (``PT4M13S``) to whole seconds."""
    if not value:
        return None
    m = _DURATION_RE.match(value)
    if not m:
        return None
    parts = {k: int(v) for k, v in m.groupdict(default="0").items()}
    return parts["days"] * 86400 + parts["hours"] * 3600 + parts["minutes"] * 60 + parts["seconds"]


def split_video_title(title: str, channel: str | None) -> tuple[str, str]:
    """Return ``(artist, title)`` for a music video title."""
    if " - " in title:
        artist, _, rest = title.partition(" - ")
        if artist.strip() and rest.strip():
            return artist.strip(), rest.strip()
    artist = (channel or "").removesuffix(_TOPIC_SUFFIX).strip()
    return artist or "Unknown", title.strip()


def _track_from_snippet(
    video_id: str,
    snippet: dict,
    *,
    entry_id: str | None = None,
    added_at: str | None = None,
) -> Track:
    channel = snippet.get("videoOwnerChannelTitle") or snippet.get("channelTitle")
    artist, title = split_video_title(snippet.get("title") or "", channel)
    return Track(
        title=title or "Unknown",
        artist=artist,
        platform_id=video_id,
        platform="youtube",
        added_at=added_at,
        entry_id=entry_id,
    )


class YouTubeAdapter:
    """Maps YouTube playlist endpoints onto the canonical :class:`Track` shape."""

    platform = "youtube"
    max_batch_size = 1  # playlistItems.insert takes a single video

    def __init__(self, client: ResilientClient, *, fetch_durations: bool = True) -> None:
        self._client = client
        self._fetch_durations = fetch_durations

    async def __aenter__(self) -> YouTubeAdapter:
        await self._client.__aenter__()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self._client.__aexit__(*exc)

    @property
    def quota(self) -> QuotaTracker:
        return self._client.quota

    def playlist_url(self, playlist_id: str) -> str:
        return f"https://www.youtube.com/playlist?list={playlist_id}"

    async def fetch_tracks(self, playlist_id: str, token: str | None) -> list[Track]:
        """Fetch every playable video of a playlist, following page tokens."""
        tracks: list[Track] = []
        page_token: str | None = None

        while True:
            params: dict = {
                "part": "snippet,contentDetails",
                "playlistId": playlist_id,
                "maxResults": _PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            resp = await self._client.call(
                "GET",
                f"{_API_BASE}/playlistItems",
                credentials=token,
                op_type=OperationType.READ_LIGHT,
                params=params,
            )
            data = resp.json()

            for item in data.get("items", []):
                snippet = item.get("snippet") or {}
                video_id = (item.get("contentDetails") or {}).get("videoId") or (
                    snippet.get("resourceId") or {}
                ).get("videoId")
                if not video_id:
                    continue
                tracks.append(
                    _track_from_snippet(
                        video_id,
                        snippet,
                        entry_id=item.get("id"),
                        added_at=snippet.get("publishedAt"),
                    )
                )

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        if self._fetch_durations and tracks:
            tracks = await self._with_durations(tracks, token)
        return tracks

    async def _with_durations(self, tracks: list[Track], token: str | None) -> list[Track]:
        durations: dict[str, int | None] = {}
        ids = list(dict.fromkeys(t.platform_id for t in tracks if t.platform_id))
        for i in range(0, len(ids), _PAGE_SIZE):
            resp = await self._client.call(
                "GET",
                f"{_API_BASE}/videos",
                credentials=token,
                op_type=OperationType.READ_LIGHT,
                params={"part": "contentDetails", "id": ",".join(ids[i : i + _PAGE_SIZE])},
            )
            for item in resp.json().get("items", []):
                durations[item["id"]] = parse_duration((item.get("contentDetails") or {}).get("duration"))

        return [replace(t, duration_seconds=durations.get(t.platform_id)) for t in tracks]

    async def track_count(self, playlist_id: str, token: str | None) -> int:
        resp = await self._client.call(
            "GET",
            f"{_API_BASE}/playlists",
            credentials=token,
            op_type=OperationType.READ_LIGHT,
            params={"part": "contentDetails", "id": playlist_id},
        )
        items = resp.json().get("items", [])
        if not items:
            return 0
        return int(items[0].get("contentDetails", {}).get("itemCount", 0))

    async def search_track(self, track: Track, token: str | None) -> Track | None:
        """Search music videos for *track*; return the best-scoring result, if any."""
        resp = await self._client.call(
            "GET",
            f"{_API_BASE}/search",
            credentials=token,
            op_type=OperationType.READ_HEAVY,
            params={
                "part": "snippet",
                "q": f"{track.artist} - {track.title}",
                "type": "video",
                "videoCategoryId": _MUSIC_CATEGORY,
                "maxResults": _SEARCH_LIMIT,
            },
        )
        candidates = [
            _track_from_snippet(item["id"]["videoId"], item.get("snippet") or {})
            for item in resp.json().get("items", [])
            if (item.get("id") or {}).get("videoId")
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda c: track_match_score(track, c))

    async def add_tracks(self, playlist_id: str, tracks: list[Track], token: str | None) -> int:
        added = 0
        for t in tracks:
            if not t.platform_id:
                continue
            await self._client.call(
                "POST",
                f"{_API_BASE}/playlistItems",
                credentials=token,
                op_type=OperationType.WRITE,
                params={"part": "snippet"},
                json={
                    "snippet": {
                        "playlistId": playlist_id,
                        "resourceId": {"kind": "youtube#video", "videoId": t.platform_id},
                    }
                },
            )
            added += 1
        return added

    async def remove_tracks(self, playlist_id: str, tracks: list[Track], token: str | None) -> int:
        """Delete playlist entries; tracks must carry their ``entry_id``."""
        removed = 0
        for t in tracks:
            if not t.entry_id:
                log.warning("youtube_remove_without_entry", video_id=t.platform_id, playlist_id=playlist_id)
                continue
            await self._client.call(
                "DELETE",
                f"{_API_BASE}/playlistItems",
                credentials=token,
                op_type=OperationType.DELETE,
                params={"id": t.entry_id},
            )
            removed += 1
        return removed

    async def create_playlist(
        self,
        name: str,
        description: str,
        public: bool,
        token: str | None,
    ) -> str:
        resp = await self._client.call(
            "POST",
            f"{_API_BASE}/playlists",
            credentials=token,
            op_type=OperationType.WRITE,
            params={"part": "snippet,status"},
            json={
                "snippet": {"title": name, "description": description},
                "status": {"privacyStatus": "public" if public else "private"},
            },
        )
        playlist_id = resp.json()["id"]
        log.info("youtube_playlist_created", playlist_id=playlist_id, name=name)
        return playlist_id
