"""HTTP API for musync."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field

from musync.storage import PlaylistNotFound, PlaylistTrack, TrackNotFound
from musync.sync.engine import SyncInProgress

if TYPE_CHECKING:
    from musync.storage import Database
    from musync.sync.engine import ReconciliationEngine
    from musync.sync.quota import QuotaTracker

log = structlog.get_logger(__name__)

DISCONNECT_POLL_INTERVAL = 0.5


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class SyncRequest(BaseModel):
    """Body of ``POST /playlists/{id}/sync``; no platforms means all of them."""

    platforms: list[str] | None = None


class PlaylistCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    is_public: bool = False


class PlaylistUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    is_public: bool | None = None


class TrackCreate(BaseModel):
    title: str = Field(min_length=1)
    artist: str = Field(min_length=1)
    album: str | None = None
    duration_seconds: int | None = Field(default=None, ge=0)


class ConnectRequest(BaseModel):
    remote_playlist_id: str = Field(min_length=1)


class ImportRequest(BaseModel):
    remote_playlist_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    is_public: bool = False


async def watch_disconnect(
    request: Request,
    cancel: asyncio.Event,
    interval: float = DISCONNECT_POLL_INTERVAL,
) -> None:
    """Set *cancel* once the client behind *request* goes away."""
    while not cancel.is_set():
        if await request.is_disconnected():
            log.info("sync_client_disconnected")
            cancel.set()
            return
        await asyncio.sleep(interval)


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app(
    engine: ReconciliationEngine,
    db: Database,
    quotas: Mapping[str, QuotaTracker],
) -> FastAPI:
    """Build the FastAPI application exposing playlists, sync and quota."""
    app = FastAPI(title="musync", docs_url=None, redoc_url=None)
    started_at = datetime.now(timezone.utc)

    async def _load(playlist_id: int):
        try:
            return await db.load_playlist(playlist_id)
        except PlaylistNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    def _check_platforms(platforms: list[str]) -> None:
        unknown = [p for p in platforms if p not in engine.platforms]
        if unknown:
            raise HTTPException(
                status_code=422,
                detail=f"Unknown platform(s): {', '.join(unknown)}",
            )

    @app.get("/health")
    async def health_endpoint() -> dict:
        uptime = (datetime.now(timezone.utc) - started_at).total_seconds()
        return {"ok": True, "uptime_seconds": round(uptime, 2)}

    @app.get("/quota")
    async def quota_endpoint() -> dict:
        return {name: tracker.stats().to_dict() for name, tracker in quotas.items()}

    # -- playlists ------------------------------------------------------------

    @app.get("/playlists")
    async def list_playlists_endpoint() -> list[dict]:
        return [p.model_dump(mode="json") for p in await db.list_playlists()]

    @app.post("/playlists", status_code=201)
    async def create_playlist_endpoint(body: PlaylistCreate) -> dict:
        playlist = await db.create_playlist(
            name=body.name, description=body.description, is_public=body.is_public
        )
        log.info("playlist_created", playlist_id=playlist.id, name=playlist.name)
        return playlist.model_dump(mode="json")

    @app.get("/playlists/{playlist_id}")
    async def get_playlist_endpoint(playlist_id: int) -> dict:
        playlist = await _load(playlist_id)
        return playlist.model_dump(mode="json")

    @app.patch("/playlists/{playlist_id}")
    async def update_playlist_endpoint(playlist_id: int, body: PlaylistUpdate) -> dict:
        try:
            playlist = await db.update_playlist(playlist_id, **body.model_dump(exclude_none=True))
        except PlaylistNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return playlist.model_dump(mode="json")

    @app.delete("/playlists/{playlist_id}", status_code=204)
    async def delete_playlist_endpoint(playlist_id: int) -> Response:
        try:
            await db.delete_playlist(playlist_id)
        except PlaylistNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        log.info("playlist_deleted", playlist_id=playlist_id)
        return Response(status_code=204)

    @app.post("/playlists/{playlist_id}/tracks", status_code=201)
    async def add_tracks_endpoint(playlist_id: int, body: list[TrackCreate]) -> list[dict]:
        await _load(playlist_id)
        added = await db.add_tracks(
            playlist_id, [PlaylistTrack(**t.model_dump()) for t in body]
        )
        return [t.model_dump(mode="json") for t in added]

    @app.delete("/playlists/{playlist_id}/tracks/{track_id}")
    async def remove_track_endpoint(playlist_id: int, track_id: int) -> dict:
        try:
            track = await db.remove_track(playlist_id, track_id)
        except (PlaylistNotFound, TrackNotFound) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return track.model_dump(mode="json")

    # -- platform connections -------------------------------------------------

    @app.post("/playlists/{playlist_id}/platforms/{platform}", status_code=201)
    async def connect_endpoint(playlist_id: int, platform: str, body: ConnectRequest) -> dict:
        _check_platforms([platform])
        try:
            connection = await engine.connect_remote(playlist_id, platform, body.remote_playlist_id)
        except PlaylistNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except SyncInProgress as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return connection.model_dump(mode="json")

    @app.delete("/playlists/{playlist_id}/platforms/{platform}", status_code=204)
    async def disconnect_endpoint(playlist_id: int, platform: str) -> Response:
        _check_platforms([platform])
        try:
            removed = await engine.disconnect(playlist_id, platform)
        except PlaylistNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except SyncInProgress as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not removed:
            raise HTTPException(status_code=404, detail=f"Playlist {playlist_id} is not connected to {platform}")
        return Response(status_code=204)

    @app.post("/import/{platform}", status_code=201)
    async def import_endpoint(platform: str, body: ImportRequest) -> dict:
        _check_platforms([platform])
        report = await engine.import_remote(
            platform,
            body.remote_playlist_id,
            name=body.name,
            description=body.description,
            is_public=body.is_public,
        )
        return report.to_dict()

    # -- sync -----------------------------------------------------------------

    @app.post("/playlists/{playlist_id}/sync")
    async def sync_endpoint(
        playlist_id: int,
        request: Request,
        body: SyncRequest | None = None,
    ) -> dict:
        platforms = engine.platforms if body is None or body.platforms is None else body.platforms
        _check_platforms(platforms)

        log.info("sync_requested", playlist_id=playlist_id, platforms=platforms)
        cancel = asyncio.Event()
        watcher = asyncio.create_task(watch_disconnect(request, cancel))
        try:
            report = await engine.reconcile(playlist_id, platforms, cancel_event=cancel)
        except PlaylistNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        finally:
            watcher.cancel()
        return report.to_dict()

    @app.get("/playlists/{playlist_id}/runs")
    async def runs_endpoint(playlist_id: int, limit: int = 20) -> list[dict]:
        await _load(playlist_id)
        runs = await db.list_sync_runs(limit=limit, playlist_id=playlist_id)
        return [r.model_dump(mode="json") for r in runs]

    return app
