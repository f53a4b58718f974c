"""Reconciliation engine: mirrors the local playlist onto each connected platform."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import structlog

from musync.auth import CredentialError
from musync.storage.models import PlatformConnection, PlaylistTrack
from musync.sync.client import AuthError, RemoteAPIError, TransientNetworkError
from musync.sync.differ import Track, TrackPair, exceeds_removal_guard, plan_changes
from musync.sync.quota import QuotaExceeded

if TYPE_CHECKING:
    from musync.auth import CredentialProvider
    from musync.config import AppConfig
    from musync.storage.database import Database
    from musync.storage.models import Playlist
    from musync.sync.quota import QuotaTracker

log = structlog.get_logger(__name__)

_PER_TRACK_ERRORS = (RemoteAPIError, TransientNetworkError)
_STOPPING_ERRORS = (QuotaExceeded, AuthError)


class SyncPhase(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    MATCHING = "matching"
    PLANNING = "planning"
    APPLYING = "applying"
    VERIFYING = "verifying"
    SYNCED = "synced"
    PARTIAL = "partial"
    WARNING = "warning"
    FAILED = "failed"


_CONNECTION_STATUS = {
    SyncPhase.SYNCED: "synced",
    SyncPhase.PARTIAL: "partial",
    SyncPhase.WARNING: "partial",
    SyncPhase.FAILED: "failed",
}


class TrackUnavailable(Exception):
    """A local track could not be placed on the remote platform."""

    def __init__(self, track: Track, reason: str) -> None:
        super().__init__(f"{track.artist} - {track.title}: {reason}")
        self.track = track
        self.reason = reason


class UnsafeBulkRemoval(Exception):
    """Planned removals would wipe out most of the remote playlist."""

    def __init__(self, removal_count: int, remote_size: int, ratio: float) -> None:
        super().__init__(
            f"Refusing to remove {removal_count} of {remote_size} remote tracks "
            f"(limit {ratio:.0%}); removal skipped"
        )
        self.removal_count = removal_count
        self.remote_size = remote_size
        self.ratio = ratio


class SyncInProgress(Exception):
    """A sync of this playlist and platform is running right now."""

    def __init__(self, playlist_id: int, platform: str) -> None:
        super().__init__(f"Sync of playlist {playlist_id} on {platform} already in progress")
        self.playlist_id = playlist_id
        self.platform = platform


class _RunStopped(Exception):
    """Cancellation or deadline reached between track operations."""


class PlatformAdapter(Protocol):
    platform: str
    max_batch_size: int

    @property
    def quota(self) -> QuotaTracker: ...

    def playlist_url(self, playlist_id: str) -> str: ...

    async def fetch_tracks(self, playlist_id: str, token: str | None) -> list[Track]: ...

    async def track_count(self, playlist_id: str, token: str | None) -> int: ...

    async def search_track(self, track: Track, token: str | None) -> Track | None: ...

    async def add_tracks(self, playlist_id: str, tracks: list[Track], token: str | None) -> int: ...

    async def remove_tracks(self, playlist_id: str, tracks: list[Track], token: str | None) -> int: ...

    async def create_playlist(self, name: str, description: str, public: bool, token: str | None) -> str: ...


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class UnavailableTrack:
    title: str
    artist: str
    reason: str

    def to_dict(self) -> dict:
        return {"title": self.title, "artist": self.artist, "reason": self.reason}


@dataclass
class PlatformOutcome:
    platform: str
    status: SyncPhase = SyncPhase.IDLE
    added: int = 0
    removed: int = 0
    imported: int = 0
    linked: int = 0
    unavailable_tracks: list[UnavailableTrack] = field(default_factory=list)
    remote_url: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "added": self.added,
            "removed": self.removed,
            "imported": self.imported,
            "unavailable_tracks": [u.to_dict() for u in self.unavailable_tracks],
            "remote_url": self.remote_url,
            "error": self.error,
        }

    def to_json(self) -> str:
        return json.dumps({**self.to_dict(), "linked": self.linked})


@dataclass
class ReconcileReport:
    playlist_id: int
    per_platform: dict[str, PlatformOutcome] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "playlist_id": self.playlist_id,
            "per_platform": {name: o.to_dict() for name, o in self.per_platform.items()},
        }


@dataclass
class _PlatformRun:
    """Mutable state of one platform workflow."""

    playlist: Playlist
    adapter: PlatformAdapter
    outcome: PlatformOutcome
    deadline: float
    cancel_event: asyncio.Event | None
    log: structlog.stdlib.BoundLogger
    token: str | None = None
    connection: PlatformConnection | None = None
    present_ids: set[str] | None = None  # remote IDs confirmed present
    local_ids: set[str] = field(default_factory=set)  # IDs the local playlist now knows
    failed_batches: int = 0
    guard_error: str | None = None

    @property
    def platform(self) -> str:
        return self.adapter.platform

    @property
    def remote_id(self) -> str:
        assert self.connection is not None  # noqa: S101
        return self.connection.platform_playlist_id


def _project(track: PlaylistTrack, platform: str) -> Track:
    """View a local track through one platform's ID space."""
    return Track(
        title=track.title,
        artist=track.artist,
        album=track.album,
        duration_seconds=track.duration_seconds,
        platform_id=track.platform_ids.get(platform),
        platform=platform,
        added_at=track.added_at.isoformat() if track.added_at else None,
        local_id=track.id,
    )


def _to_local(track: Track) -> PlaylistTrack:
    return PlaylistTrack(
        title=track.title,
        artist=track.artist,
        album=track.album,
        duration_seconds=track.duration_seconds,
        added_at=track.added_at,
        platform_ids={track.platform: track.platform_id} if track.platform and track.platform_id else {},
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Brings the remote copies of a playlist in line with the local playlist."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        adapters: Mapping[str, PlatformAdapter],
        credentials: CredentialProvider,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._db = db
        self._adapters = dict(adapters)
        self._credentials = credentials
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}

    @property
    def platforms(self) -> list[str]:
        return list(self._adapters)

    async def reconcile(
        self,
        playlist_id: int,
        platforms: list[str] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileReport:
        """Sync *playlist_id* to every requested platform concurrently.

        Raises ``PlaylistNotFound`` for an unknown playlist and ``ValueError``
        for a platform without an adapter. Per-platform failures never raise;
        they are reported in the returned outcomes.
        """
        playlist = await self._db.load_playlist(playlist_id)
        requested = list(dict.fromkeys(self._adapters if platforms is None else platforms))
        unknown = [p for p in requested if p not in self._adapters]
        if unknown:
            msg = f"Unknown platform(s): {', '.join(unknown)}"
            raise ValueError(msg)

        log.info("reconcile_started", playlist_id=playlist_id, platforms=requested)
        outcomes = await asyncio.gather(
            *(self._sync_platform(playlist, p, cancel_event) for p in requested)
        )
        report = ReconcileReport(
            playlist_id=playlist_id,
            per_platform={o.platform: o for o in outcomes},
        )
        log.info(
            "reconcile_finished",
            playlist_id=playlist_id,
            statuses={o.platform: o.status.value for o in outcomes},
        )
        return report

    # -- connections ----------------------------------------------------------

    def _adapter(self, platform: str) -> PlatformAdapter:
        try:
            return self._adapters[platform]
        except KeyError:
            msg = f"Unknown platform(s): {platform}"
            raise ValueError(msg) from None

    def _ensure_idle(self, playlist_id: int, platform: str) -> None:
        lock = self._locks.get((playlist_id, platform))
        if lock is not None and lock.locked():
            raise SyncInProgress(playlist_id, platform)

    async def connect_remote(
        self,
        playlist_id: int,
        platform: str,
        remote_playlist_id: str,
    ) -> PlatformConnection:
        """Attach an existing remote playlist instead of creating a new one.

        Any previous connection to *platform* is replaced and its sync
        history forgotten, so the next sync merges both sides without
        inferring deletions.
        """
        adapter = self._adapter(platform)
        await self._db.load_playlist(playlist_id)
        self._ensure_idle(playlist_id, platform)

        connection = PlatformConnection(
            platform=platform,
            platform_playlist_id=remote_playlist_id,
            sync_status="pending",
            remote_url=adapter.playlist_url(remote_playlist_id),
        )
        await self._db.update_sync_state(playlist_id, connection)
        log.info(
            "remote_playlist_connected",
            playlist_id=playlist_id,
            platform=platform,
            remote_id=remote_playlist_id,
        )
        return connection

    async def disconnect(self, playlist_id: int, platform: str) -> bool:
        """Forget the remote playlist on *platform*; the remote side is untouched."""
        self._adapter(platform)
        await self._db.load_playlist(playlist_id)
        self._ensure_idle(playlist_id, platform)

        removed = await self._db.delete_sync_state(playlist_id, platform)
        log.info("remote_playlist_disconnected", playlist_id=playlist_id, platform=platform, existed=removed)
        return removed

    async def import_remote(
        self,
        platform: str,
        remote_playlist_id: str,
        *,
        name: str,
        description: str = "",
        is_public: bool = False,
    ) -> ReconcileReport:
        """Create a local playlist from a remote one and sync it once."""
        self._adapter(platform)
        playlist = await self._db.create_playlist(name=name, description=description, is_public=is_public)
        await self.connect_remote(playlist.id, platform, remote_playlist_id)
        return await self.reconcile(playlist.id, [platform])

    # -- per-platform runs ----------------------------------------------------

    async def _sync_platform(
        self,
        playlist: Playlist,
        platform: str,
        cancel_event: asyncio.Event | None,
    ) -> PlatformOutcome:
        key = (playlist.id, platform)
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            return PlatformOutcome(
                platform=platform,
                status=SyncPhase.FAILED,
                error="Sync already in progress",
            )

        try:
            async with lock:
                return await self._sync_locked(playlist, platform, cancel_event)
        finally:
            if not lock.locked() and self._locks.get(key) is lock:
                del self._locks[key]

    async def _sync_locked(
        self,
        playlist: Playlist,
        platform: str,
        cancel_event: asyncio.Event | None,
    ) -> PlatformOutcome:
        run = _PlatformRun(
            playlist=playlist,
            adapter=self._adapters[platform],
            outcome=PlatformOutcome(platform=platform),
            deadline=self._clock() + self._config.sync.run_timeout_seconds,
            cancel_event=cancel_event,
            log=log.bind(playlist_id=playlist.id, platform=platform),
            connection=playlist.connections.get(platform),
        )
        sync_run = await self._db.start_sync_run(playlist_id=playlist.id, platform=platform)
        try:
            await self._run_workflow(run)
        except asyncio.CancelledError:
            run.outcome.status = SyncPhase.PARTIAL
            run.outcome.error = "Sync cancelled"
            run.log.warning("sync_cancelled")
            await asyncio.shield(self._persist(run, sync_run.id))
            raise
        except Exception as exc:
            run.outcome.status = SyncPhase.FAILED
            run.outcome.error = str(exc)
            run.log.error("platform_sync_failed", error=str(exc), error_type=type(exc).__name__)

        await self._persist(run, sync_run.id)
        run.log.info(
            "platform_sync_finished",
            status=run.outcome.status.value,
            added=run.outcome.added,
            removed=run.outcome.removed,
            imported=run.outcome.imported,
            unavailable=len(run.outcome.unavailable_tracks),
        )
        return run.outcome

    def _enter(self, run: _PlatformRun, phase: SyncPhase) -> None:
        run.outcome.status = phase
        run.log.debug("sync_phase", phase=phase.value)

    def _checkpoint(self, run: _PlatformRun) -> None:
        if run.cancel_event is not None and run.cancel_event.is_set():
            raise _RunStopped("Sync cancelled")
        if self._clock() > run.deadline:
            raise _RunStopped(f"Sync exceeded {self._config.sync.run_timeout_seconds}s time budget")

    # -- workflow -------------------------------------------------------------

    async def _run_workflow(self, run: _PlatformRun) -> None:
        adapter = run.adapter
        sync_cfg = self._config.sync

        run.token = await self._credentials.get_token(run.platform)
        if run.connection is None:
            run.connection = await self._connect(run)
        run.outcome.remote_url = run.connection.remote_url or adapter.playlist_url(run.remote_id)

        self._enter(run, SyncPhase.FETCHING)
        remote = await self._fetch_remote(run)
        run.present_ids = {t.platform_id for t in remote if t.platform_id}

        self._enter(run, SyncPhase.MATCHING)
        local = [_project(t, run.platform) for t in run.playlist.tracks]
        run.local_ids = {t.platform_id for t in local if t.platform_id}

        self._enter(run, SyncPhase.PLANNING)
        plan = plan_changes(
            local,
            remote,
            synced_ids=set(run.connection.synced_ids),
            propagate_deletions=sync_cfg.propagate_deletions,
            threshold=sync_cfg.match_threshold,
        )
        run.log.info(
            "sync_planned",
            remote=len(remote),
            local=len(local),
            matched=len(plan.matched),
            to_add=len(plan.tracks_to_add_to_target),
            to_import=len(plan.tracks_to_add_to_source),
            to_remove=len(plan.tracks_to_remove_from_target),
        )

        removals = plan.tracks_to_remove_from_target
        if exceeds_removal_guard(len(removals), len(remote), sync_cfg.removal_guard_ratio):
            guard = UnsafeBulkRemoval(len(removals), len(remote), sync_cfg.removal_guard_ratio)
            run.log.warning("unsafe_bulk_removal", removals=len(removals), remote=len(remote))
            run.guard_error = str(guard)
            removals = []

        self._enter(run, SyncPhase.APPLYING)
        try:
            resolved, linked_remote = await self._resolve(run, plan.tracks_to_add_to_target)
            await self._add(run, resolved)
            imports = _drop_linked(plan.tracks_to_add_to_source, linked_remote)
            await self._import(run, imports)
            await self._link(run, plan.id_links)
            await self._remove(run, removals)
        except _RunStopped as exc:
            run.log.warning("sync_stopped", reason=str(exc))
            run.outcome.status = SyncPhase.PARTIAL
            run.outcome.error = str(exc)
            return
        except _STOPPING_ERRORS as exc:
            run.log.warning("sync_interrupted", error=str(exc), error_type=type(exc).__name__)
            run.outcome.status = SyncPhase.PARTIAL
            run.outcome.error = str(exc)
            return

        self._enter(run, SyncPhase.VERIFYING)
        await self._verify(run, len(remote))

        if run.failed_batches:
            run.outcome.status = SyncPhase.PARTIAL
            run.outcome.error = f"{run.failed_batches} remote batch(es) failed"
        elif run.guard_error:
            run.outcome.status = SyncPhase.WARNING
            run.outcome.error = run.guard_error
        else:
            run.outcome.status = SyncPhase.SYNCED

    async def _connect(self, run: _PlatformRun) -> PlatformConnection:
        playlist = run.playlist
        remote_id = await run.adapter.create_playlist(
            playlist.name, playlist.description, playlist.is_public, run.token
        )
        connection = PlatformConnection(
            platform=run.platform,
            platform_playlist_id=remote_id,
            sync_status="pending",
            remote_url=run.adapter.playlist_url(remote_id),
        )
        await self._db.update_sync_state(playlist.id, connection)
        run.log.info("remote_playlist_created", remote_id=remote_id)
        return connection

    async def _fetch_remote(self, run: _PlatformRun) -> list[Track]:
        try:
            return await run.adapter.fetch_tracks(run.remote_id, run.token)
        except AuthError:
            run.log.info("auth_rejected_refreshing_token")

        try:
            run.token = await self._credentials.refresh(run.platform)
            return await run.adapter.fetch_tracks(run.remote_id, run.token)
        except (AuthError, CredentialError) as exc:
            raise AuthError(
                f"{run.platform} rejected the stored credentials; reconnect this platform"
            ) from exc

    async def _resolve(self, run: _PlatformRun, tracks: list[Track]) -> tuple[list[Track], list[str]]:
        """Search for unresolved tracks.

        Returns the tracks to add and the IDs of remote tracks that search
        linked to a local track without needing an add.
        """
        to_add: list[Track] = []
        linked_remote: list[str] = []
        searched = False

        for track in tracks:
            if track.is_resolved:
                to_add.append(track)
                continue

            self._checkpoint(run)
            if searched and self._config.sync.inter_call_delay > 0:
                await self._sleep(self._config.sync.inter_call_delay)
            searched = True

            try:
                found = await self._search(run, track)
            except TrackUnavailable as exc:
                run.log.info("track_unavailable", artist=track.artist, title=track.title, reason=exc.reason)
                run.outcome.unavailable_tracks.append(
                    UnavailableTrack(title=track.title, artist=track.artist, reason=exc.reason)
                )
                continue

            if track.local_id is not None:
                await self._db.set_track_platform_id(track.local_id, run.platform, found.platform_id)
            run.local_ids.add(found.platform_id)
            assert run.present_ids is not None  # noqa: S101
            if found.platform_id in run.present_ids:
                linked_remote.append(found.platform_id)
                run.outcome.linked += 1
            else:
                to_add.append(replace(found, local_id=track.local_id))

        return to_add, linked_remote

    async def _search(self, run: _PlatformRun, track: Track) -> Track:
        try:
            found = await run.adapter.search_track(track, run.token)
        except _PER_TRACK_ERRORS as exc:
            raise TrackUnavailable(track, f"search failed: {exc}") from exc
        if found is None or not found.platform_id:
            raise TrackUnavailable(track, f"not found on {run.platform}")
        return found

    async def _add(self, run: _PlatformRun, tracks: list[Track]) -> None:
        assert run.present_ids is not None  # noqa: S101
        batch_size = run.adapter.quota.batch_size_for(run.adapter.max_batch_size)
        for i in range(0, len(tracks), batch_size):
            self._checkpoint(run)
            batch = tracks[i : i + batch_size]
            try:
                run.outcome.added += await run.adapter.add_tracks(run.remote_id, batch, run.token)
            except _PER_TRACK_ERRORS as exc:
                run.failed_batches += 1
                run.log.warning("add_batch_failed", size=len(batch), error=str(exc))
                run.outcome.unavailable_tracks.extend(
                    UnavailableTrack(title=t.title, artist=t.artist, reason=f"add failed: {exc}")
                    for t in batch
                )
                continue
            run.present_ids.update(t.platform_id for t in batch if t.platform_id)

    async def _import(self, run: _PlatformRun, tracks: list[Track]) -> None:
        if not tracks:
            return
        added = await self._db.add_tracks(run.playlist.id, [_to_local(t) for t in tracks])
        run.outcome.imported += len(added)
        run.local_ids.update(t.platform_id for t in tracks if t.platform_id)
        run.log.info("tracks_imported", count=len(added))

    async def _link(self, run: _PlatformRun, pairs: list[TrackPair]) -> None:
        for pair in pairs:
            if pair.source.local_id is None or not pair.target.platform_id:
                continue
            await self._db.set_track_platform_id(pair.source.local_id, run.platform, pair.target.platform_id)
            run.local_ids.add(pair.target.platform_id)
            run.outcome.linked += 1

    async def _remove(self, run: _PlatformRun, tracks: list[Track]) -> None:
        assert run.present_ids is not None  # noqa: S101
        batch_size = run.adapter.quota.batch_size_for(run.adapter.max_batch_size)
        for i in range(0, len(tracks), batch_size):
            self._checkpoint(run)
            batch = tracks[i : i + batch_size]
            try:
                run.outcome.removed += await run.adapter.remove_tracks(run.remote_id, batch, run.token)
            except _PER_TRACK_ERRORS as exc:
                run.failed_batches += 1
                run.log.warning("remove_batch_failed", size=len(batch), error=str(exc))
                continue
            for t in batch:
                if t.platform_id:
                    run.present_ids.discard(t.platform_id)

    async def _verify(self, run: _PlatformRun, remote_before: int) -> None:
        expected = remote_before + run.outcome.added - run.outcome.removed
        try:
            actual = await run.adapter.track_count(run.remote_id, run.token)
        except (*_PER_TRACK_ERRORS, *_STOPPING_ERRORS) as exc:
            run.log.warning("verify_skipped", error=str(exc))
            return
        if actual != expected:
            run.log.warning("verify_count_mismatch", expected=expected, actual=actual)

    # -- persistence ----------------------------------------------------------

    async def _persist(self, run: _PlatformRun, sync_run_id: int) -> None:
        outcome = run.outcome
        connection = run.connection
        try:
            if connection is not None:
                update: dict = {
                    "sync_status": _CONNECTION_STATUS.get(outcome.status, "failed"),
                    "sync_error": outcome.error,
                }
                if outcome.status is not SyncPhase.FAILED:
                    update["last_synced_at"] = datetime.now(timezone.utc)
                if run.present_ids is not None and outcome.status is not SyncPhase.FAILED:
                    known = run.local_ids | set(connection.synced_ids)
                    update["synced_ids"] = sorted(run.present_ids & known)
                run.connection = connection.model_copy(update=update)
                await self._db.update_sync_state(run.playlist.id, run.connection)
        except Exception as exc:
            outcome.status = SyncPhase.FAILED
            outcome.error = f"Could not save sync state: {exc}"
            run.log.error("sync_state_persist_failed", error=str(exc))

        try:
            await self._db.finish_sync_run(
                sync_run_id,
                status=outcome.status.value,
                stats_json=outcome.to_json(),
                error_message=outcome.error,
            )
        except Exception as exc:
            run.log.error("sync_run_persist_failed", error=str(exc))


def _drop_linked(tracks: list[Track], linked_ids: list[str]) -> list[Track]:
    """Remove one remote track per ID that search already linked locally."""
    pending = list(linked_ids)
    kept: list[Track] = []
    for t in tracks:
        if t.platform_id and t.platform_id in pending:
            pending.remove(t.platform_id)
            continue
        kept.append(t)
    return kept
