"""Tests for the reconciliation engine with in-memory platform adapters."""

from __future__ import annotations

import asyncio
import json

import pytest

from musync.auth import CredentialError
from musync.config import AppConfig, SyncConfig
from musync.storage import PlatformConnection, PlaylistNotFound, PlaylistTrack
from musync.sync import ReconciliationEngine, SyncInProgress, SyncPhase
from musync.sync.client import AuthError, RemoteAPIError
from musync.sync.differ import Track
from musync.sync.quota import QuotaExceeded, QuotaTracker

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class MockAdapter:
    """In-memory platform: a remote playlist plus a searchable catalog."""

    max_batch_size = 100

    def __init__(
        self,
        platform: str = "youtube",
        *,
        remote: list[Track] | None = None,
        catalog: list[Track] | None = None,
    ) -> None:
        self.platform = platform
        self.quota = QuotaTracker()
        self.remote: list[Track] = list(remote or [])
        self.catalog = {(t.artist.lower(), t.title.lower()): t for t in catalog or []}
        self.calls: list[tuple[str, object]] = []
        self.tokens: list[str | None] = []
        self.errors: dict[str, list[Exception | None]] = {}
        self.entered: asyncio.Event | None = None
        self.gate: asyncio.Event | None = None
        self.created = 0

    def _maybe_fail(self, op: str) -> None:
        queue = self.errors.get(op)
        if queue:
            exc = queue.pop(0)
            if exc is not None:
                raise exc

    def playlist_url(self, playlist_id: str) -> str:
        return f"https://music.example/{self.platform}/{playlist_id}"

    async def fetch_tracks(self, playlist_id: str, token: str | None) -> list[Track]:
        self.calls.append(("fetch", playlist_id))
        self.tokens.append(token)
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_fail("fetch")
        return list(self.remote)

    async def track_count(self, playlist_id: str, token: str | None) -> int:
        self.calls.append(("count", playlist_id))
        return len(self.remote)

    async def search_track(self, track: Track, token: str | None) -> Track | None:
        self.calls.append(("search", f"{track.artist} - {track.title}"))
        self._maybe_fail("search")
        return self.catalog.get((track.artist.lower(), track.title.lower()))

    async def add_tracks(self, playlist_id: str, tracks: list[Track], token: str | None) -> int:
        self.calls.append(("add", [t.platform_id for t in tracks]))
        self._maybe_fail("add")
        for t in tracks:
            self.remote.append(_remote(t.title, t.artist, t.platform_id, self.platform))
        return len(tracks)

    async def remove_tracks(self, playlist_id: str, tracks: list[Track], token: str | None) -> int:
        self.calls.append(("remove", [t.platform_id for t in tracks]))
        ids = {t.platform_id for t in tracks}
        self.remote = [t for t in self.remote if t.platform_id not in ids]
        return len(tracks)

    async def create_playlist(self, name: str, description: str, public: bool, token: str | None) -> str:
        self.calls.append(("create", name))
        self.created += 1
        return f"{self.platform}-new"

    def ops(self, name: str) -> list[object]:
        return [arg for op, arg in self.calls if op == name]


class FakeCredentials:
    def __init__(self, *, refresh_error: Exception | None = None) -> None:
        self.refreshed: list[str] = []
        self._refresh_error = refresh_error

    async def get_token(self, platform: str) -> str | None:
        return f"{platform}-token-1"

    async def refresh(self, platform: str) -> str | None:
        self.refreshed.append(platform)
        if self._refresh_error is not None:
            raise self._refresh_error
        return f"{platform}-token-2"


def _remote(title: str, artist: str, platform_id: str | None, platform: str = "youtube") -> Track:
    return Track(
        title=title,
        artist=artist,
        platform_id=platform_id,
        platform=platform,
        entry_id=f"entry-{platform_id}",
    )


def _engine(db, *adapters, credentials=None, **sync_overrides) -> ReconciliationEngine:
    config = AppConfig(sync=SyncConfig(inter_call_delay=0, **sync_overrides))
    return ReconciliationEngine(
        config,
        db,
        {a.platform: a for a in adapters},
        credentials or FakeCredentials(),
    )


async def _playlist(
    db,
    tracks: list[PlaylistTrack] | None = None,
    *,
    connect: tuple[str, ...] = ("youtube",),
    synced_ids: list[str] | None = None,
) -> int:
    playlist = await db.create_playlist(name="Road Trip")
    if tracks:
        await db.add_tracks(playlist.id, tracks)
    for platform in connect:
        await db.update_sync_state(
            playlist.id,
            PlatformConnection(
                platform=platform,
                platform_playlist_id=f"{platform}-remote",
                synced_ids=synced_ids or [],
            ),
        )
    return playlist.id


HELLO = PlaylistTrack(title="Hello", artist="Adele")
YESTERDAY = PlaylistTrack(title="Yesterday", artist="The Beatles")


# ---------------------------------------------------------------------------
# Happy path and idempotence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_sync_adds_then_second_sync_is_noop(db) -> None:
    adapter = MockAdapter(
        catalog=[_remote("Hello", "Adele", "v1"), _remote("Yesterday", "The Beatles", "v2")],
    )
    playlist_id = await _playlist(db, [HELLO, YESTERDAY])
    engine = _engine(db, adapter)

    report = await engine.reconcile(playlist_id)
    outcome = report.per_platform["youtube"]

    assert outcome.status is SyncPhase.SYNCED
    assert outcome.added == 2
    assert outcome.error is None
    assert outcome.remote_url == "https://music.example/youtube/youtube-remote"
    assert [t.platform_id for t in adapter.remote] == ["v1", "v2"]

    playlist = await db.load_playlist(playlist_id)
    assert [t.platform_ids for t in playlist.tracks] == [{"youtube": "v1"}, {"youtube": "v2"}]
    connection = playlist.connections["youtube"]
    assert connection.sync_status == "synced"
    assert connection.synced_ids == ["v1", "v2"]
    assert connection.last_synced_at is not None

    adapter.calls.clear()
    second = await engine.reconcile(playlist_id)
    assert second.per_platform["youtube"].status is SyncPhase.SYNCED
    assert second.per_platform["youtube"].added == 0
    assert adapter.ops("search") == []
    assert adapter.ops("add") == []
    assert len(adapter.remote) == 2


@pytest.mark.asyncio
async def test_report_to_dict_shape(db) -> None:
    adapter = MockAdapter(catalog=[_remote("Hello", "Adele", "v1")])
    playlist_id = await _playlist(db, [HELLO])

    report = await _engine(db, adapter).reconcile(playlist_id)

    data = report.to_dict()
    assert data["playlist_id"] == playlist_id
    assert set(data["per_platform"]["youtube"]) == {
        "status",
        "added",
        "removed",
        "imported",
        "unavailable_tracks",
        "remote_url",
        "error",
    }
    assert data["per_platform"]["youtube"]["status"] == "synced"


@pytest.mark.asyncio
async def test_fuzzy_match_links_existing_remote_track(db) -> None:
    adapter = MockAdapter(remote=[_remote("Hello!", "ADELE", "v1")])
    playlist_id = await _playlist(db, [HELLO])

    report = await _engine(db, adapter).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.added == 0
    assert outcome.imported == 0
    assert outcome.linked == 1
    assert adapter.ops("search") == []
    playlist = await db.load_playlist(playlist_id)
    assert playlist.tracks[0].platform_ids == {"youtube": "v1"}


@pytest.mark.asyncio
async def test_search_hit_already_on_remote_is_linked_not_added(db) -> None:
    official = _remote("Hello (Official Video)", "AdeleVEVO", "v1")
    adapter = MockAdapter(remote=[official], catalog=[_remote("Hello", "Adele", "v1")])
    playlist_id = await _playlist(db, [HELLO])

    report = await _engine(db, adapter).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.added == 0
    assert outcome.imported == 0
    assert outcome.linked == 1
    playlist = await db.load_playlist(playlist_id)
    assert len(playlist.tracks) == 1
    assert len(adapter.remote) == 1


@pytest.mark.asyncio
async def test_remote_only_tracks_are_imported(db) -> None:
    adapter = MockAdapter(remote=[_remote("Imagine", "John Lennon", "v9")])
    playlist_id = await _playlist(db, [])

    report = await _engine(db, adapter).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.imported == 1
    playlist = await db.load_playlist(playlist_id)
    assert [(t.title, t.platform_ids) for t in playlist.tracks] == [("Imagine", {"youtube": "v9"})]
    assert playlist.connections["youtube"].synced_ids == ["v9"]


@pytest.mark.asyncio
async def test_unavailable_track_is_reported_but_sync_succeeds(db) -> None:
    adapter = MockAdapter(catalog=[_remote("Hello", "Adele", "v1")])
    playlist_id = await _playlist(db, [HELLO, YESTERDAY])

    report = await _engine(db, adapter).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.added == 1
    assert [u.to_dict() for u in outcome.unavailable_tracks] == [
        {"title": "Yesterday", "artist": "The Beatles", "reason": "not found on youtube"}
    ]


@pytest.mark.asyncio
async def test_search_error_marks_track_unavailable(db) -> None:
    adapter = MockAdapter(catalog=[_remote("Yesterday", "The Beatles", "v2")])
    adapter.errors["search"] = [RemoteAPIError("boom", status_code=400)]
    playlist_id = await _playlist(db, [HELLO, YESTERDAY])

    report = await _engine(db, adapter).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.added == 1
    assert outcome.unavailable_tracks[0].reason.startswith("search failed")


# ---------------------------------------------------------------------------
# Connecting
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unconnected_platform_creates_remote_playlist(db) -> None:
    adapter = MockAdapter(catalog=[_remote("Hello", "Adele", "v1")])
    playlist_id = await _playlist(db, [HELLO], connect=())

    report = await _engine(db, adapter).reconcile(playlist_id)

    assert adapter.ops("create") == ["Road Trip"]
    assert report.per_platform["youtube"].status is SyncPhase.SYNCED
    connection = await db.get_sync_state(playlist_id, "youtube")
    assert connection is not None
    assert connection.platform_playlist_id == "youtube-new"
    assert connection.remote_url == "https://music.example/youtube/youtube-new"
    assert connection.sync_status == "synced"

    await _engine(db, adapter).reconcile(playlist_id)
    assert adapter.created == 1


# ---------------------------------------------------------------------------
# Deletions and the removal guard
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_local_deletion_propagates_when_enabled(db) -> None:
    remote = [_remote("Hello", "Adele", "v1"), _remote("Yesterday", "The Beatles", "v2")]
    adapter = MockAdapter(remote=remote)
    tracks = [PlaylistTrack(title="Hello", artist="Adele", platform_ids={"youtube": "v1"})]
    playlist_id = await _playlist(db, tracks, synced_ids=["v1", "v2"])

    report = await _engine(db, adapter, propagate_deletions=True).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.removed == 1
    assert [t.platform_id for t in adapter.remote] == ["v1"]
    connection = await db.get_sync_state(playlist_id, "youtube")
    assert connection.synced_ids == ["v1"]


@pytest.mark.asyncio
async def test_remote_duplicate_of_kept_track_is_not_removed(db) -> None:
    remote = [_remote("Hello", "Adele", "v1"), _remote("Hello", "Adele", "v1")]
    adapter = MockAdapter(remote=remote)
    tracks = [PlaylistTrack(title="Hello", artist="Adele", platform_ids={"youtube": "v1"})]
    playlist_id = await _playlist(db, tracks, synced_ids=["v1"])

    report = await _engine(db, adapter, propagate_deletions=True).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.removed == 0
    assert adapter.ops("remove") == []
    assert [t.platform_id for t in adapter.remote] == ["v1", "v1"]


@pytest.mark.asyncio
async def test_removal_guard_blocks_bulk_wipe(db) -> None:
    remote = [_remote(f"Song {i}", "Artist", f"v{i}") for i in range(10)]
    adapter = MockAdapter(remote=remote)
    synced = [f"v{i}" for i in range(10)]
    playlist_id = await _playlist(db, [], synced_ids=synced)

    report = await _engine(db, adapter, propagate_deletions=True).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.WARNING
    assert "Refusing to remove 10 of 10" in outcome.error
    assert outcome.removed == 0
    assert outcome.imported == 0
    assert adapter.ops("remove") == []
    assert len(adapter.remote) == 10

    connection = await db.get_sync_state(playlist_id, "youtube")
    assert connection.sync_status == "partial"
    assert "Refusing" in connection.sync_error
    assert sorted(connection.synced_ids) == sorted(synced)

    runs = await db.list_sync_runs(playlist_id=playlist_id)
    assert runs[0].status == "warning"


@pytest.mark.asyncio
async def test_without_propagation_remote_tracks_are_imported_instead(db) -> None:
    adapter = MockAdapter(remote=[_remote("Hello", "Adele", "v1")])
    playlist_id = await _playlist(db, [], synced_ids=["v1"])

    report = await _engine(db, adapter).reconcile(playlist_id)

    assert report.per_platform["youtube"].imported == 1
    assert adapter.ops("remove") == []


# ---------------------------------------------------------------------------
# Failures, isolation, stopping
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failing_platform_does_not_affect_the_other(db) -> None:
    spotify = MockAdapter("spotify")
    spotify.errors["fetch"] = [RemoteAPIError("Remote API error: 400", status_code=400)]
    youtube = MockAdapter("youtube", catalog=[_remote("Hello", "Adele", "v1")])
    playlist_id = await _playlist(db, [HELLO], connect=("spotify", "youtube"))

    report = await _engine(db, spotify, youtube).reconcile(playlist_id)

    assert report.per_platform["spotify"].status is SyncPhase.FAILED
    assert "400" in report.per_platform["spotify"].error
    assert report.per_platform["youtube"].status is SyncPhase.SYNCED
    assert report.per_platform["youtube"].added == 1

    playlist = await db.load_playlist(playlist_id)
    assert playlist.connections["spotify"].sync_status == "failed"
    assert playlist.connections["spotify"].last_synced_at is None
    assert playlist.connections["youtube"].sync_status == "synced"


@pytest.mark.asyncio
async def test_platform_subset(db) -> None:
    spotify = MockAdapter("spotify")
    youtube = MockAdapter("youtube")
    playlist_id = await _playlist(db, [], connect=("spotify", "youtube"))

    report = await _engine(db, spotify, youtube).reconcile(playlist_id, ["youtube"])

    assert list(report.per_platform) == ["youtube"]
    assert spotify.calls == []


@pytest.mark.asyncio
async def test_empty_platform_list_syncs_nothing(db) -> None:
    adapter = MockAdapter()
    playlist_id = await _playlist(db, [])

    report = await _engine(db, adapter).reconcile(playlist_id, [])

    assert report.per_platform == {}
    assert adapter.calls == []
    assert await db.list_sync_runs(playlist_id=playlist_id) == []


@pytest.mark.asyncio
async def test_auth_rejection_refreshes_token_once(db) -> None:
    adapter = MockAdapter()
    adapter.errors["fetch"] = [AuthError("401")]
    credentials = FakeCredentials()
    playlist_id = await _playlist(db, [])

    report = await _engine(db, adapter, credentials=credentials).reconcile(playlist_id)

    assert report.per_platform["youtube"].status is SyncPhase.SYNCED
    assert credentials.refreshed == ["youtube"]
    assert adapter.tokens == ["youtube-token-1", "youtube-token-2"]


@pytest.mark.asyncio
async def test_auth_rejection_after_refresh_fails_with_actionable_message(db) -> None:
    adapter = MockAdapter()
    adapter.errors["fetch"] = [AuthError("401"), AuthError("401")]
    playlist_id = await _playlist(db, [])

    report = await _engine(db, adapter).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.FAILED
    assert "reconnect" in outcome.error


@pytest.mark.asyncio
async def test_refresh_credential_error_fails_platform(db) -> None:
    adapter = MockAdapter()
    adapter.errors["fetch"] = [AuthError("401")]
    credentials = FakeCredentials(refresh_error=CredentialError("refresh token revoked"))
    playlist_id = await _playlist(db, [])

    report = await _engine(db, adapter, credentials=credentials).reconcile(playlist_id)

    assert report.per_platform["youtube"].status is SyncPhase.FAILED
    assert len(adapter.ops("fetch")) == 1


@pytest.mark.asyncio
async def test_cancel_event_stops_with_partial(db) -> None:
    adapter = MockAdapter(catalog=[_remote("Hello", "Adele", "v1")])
    playlist_id = await _playlist(db, [HELLO])
    cancel = asyncio.Event()
    cancel.set()

    report = await _engine(db, adapter).reconcile(playlist_id, cancel_event=cancel)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.PARTIAL
    assert outcome.error == "Sync cancelled"
    assert adapter.ops("search") == []
    connection = await db.get_sync_state(playlist_id, "youtube")
    assert connection.sync_status == "partial"


@pytest.mark.asyncio
async def test_cancelled_task_persists_partial_state(db) -> None:
    adapter = MockAdapter()
    adapter.entered = asyncio.Event()
    adapter.gate = asyncio.Event()
    playlist_id = await _playlist(db, [HELLO])
    await db.update_sync_state(
        playlist_id,
        PlatformConnection(
            platform="youtube",
            platform_playlist_id="youtube-remote",
            sync_status="synced",
            synced_ids=["v1"],
        ),
    )
    engine = _engine(db, adapter)

    task = asyncio.create_task(engine.reconcile(playlist_id))
    await adapter.entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    runs = await db.list_sync_runs(playlist_id=playlist_id)
    assert runs[0].status == "partial"
    assert runs[0].error_message == "Sync cancelled"
    assert runs[0].finished_at is not None
    connection = await db.get_sync_state(playlist_id, "youtube")
    assert connection.sync_status == "partial"
    assert connection.sync_error == "Sync cancelled"
    assert connection.synced_ids == ["v1"]
    assert engine._locks == {}


@pytest.mark.asyncio
async def test_time_budget_stops_between_searches(db) -> None:
    now = [0.0]

    class SlowSearchAdapter(MockAdapter):
        async def search_track(self, track: Track, token: str | None) -> Track | None:
            now[0] += 1_000
            return await super().search_track(track, token)

    adapter = SlowSearchAdapter(
        catalog=[_remote("Hello", "Adele", "v1"), _remote("Yesterday", "The Beatles", "v2")],
    )
    playlist_id = await _playlist(db, [HELLO, YESTERDAY])
    engine = ReconciliationEngine(
        AppConfig(sync=SyncConfig(inter_call_delay=0, run_timeout_seconds=600)),
        db,
        {"youtube": adapter},
        FakeCredentials(),
        clock=lambda: now[0],
    )

    report = await engine.reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.PARTIAL
    assert "time budget" in outcome.error
    assert len(adapter.ops("search")) == 1
    # the resolved ID is kept for the next run
    playlist = await db.load_playlist(playlist_id)
    assert playlist.tracks[0].platform_ids == {"youtube": "v1"}


@pytest.mark.asyncio
async def test_quota_exhaustion_mid_add_is_partial(db) -> None:
    adapter = MockAdapter(
        catalog=[_remote("Hello", "Adele", "v1"), _remote("Yesterday", "The Beatles", "v2")],
    )
    adapter.max_batch_size = 1
    adapter.errors["add"] = [None, QuotaExceeded("API quota limit reached")]
    playlist_id = await _playlist(db, [HELLO, YESTERDAY])

    report = await _engine(db, adapter).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.PARTIAL
    assert outcome.added == 1
    assert "quota" in outcome.error
    connection = await db.get_sync_state(playlist_id, "youtube")
    assert connection.sync_status == "partial"
    assert connection.synced_ids == ["v1"]


@pytest.mark.asyncio
async def test_failed_add_batch_is_partial(db) -> None:
    adapter = MockAdapter(catalog=[_remote("Hello", "Adele", "v1")])
    adapter.errors["add"] = [RemoteAPIError("Remote API error: 409", status_code=409)]
    playlist_id = await _playlist(db, [HELLO])

    report = await _engine(db, adapter).reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.PARTIAL
    assert outcome.error == "1 remote batch(es) failed"
    assert outcome.added == 0
    assert outcome.unavailable_tracks[0].reason.startswith("add failed")


@pytest.mark.asyncio
async def test_concurrent_sync_of_same_platform_is_rejected(db) -> None:
    adapter = MockAdapter()
    adapter.entered = asyncio.Event()
    adapter.gate = asyncio.Event()
    playlist_id = await _playlist(db, [])
    engine = _engine(db, adapter)

    first = asyncio.create_task(engine.reconcile(playlist_id))
    await adapter.entered.wait()
    second = await engine.reconcile(playlist_id)
    adapter.gate.set()
    first_report = await first

    assert second.per_platform["youtube"].status is SyncPhase.FAILED
    assert second.per_platform["youtube"].error == "Sync already in progress"
    assert first_report.per_platform["youtube"].status is SyncPhase.SYNCED
    assert engine._locks == {}


# ---------------------------------------------------------------------------
# Bookkeeping and argument errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_run_is_recorded(db) -> None:
    adapter = MockAdapter(catalog=[_remote("Hello", "Adele", "v1")])
    playlist_id = await _playlist(db, [HELLO])

    await _engine(db, adapter).reconcile(playlist_id)

    runs = await db.list_sync_runs(playlist_id=playlist_id)
    assert len(runs) == 1
    assert runs[0].status == "synced"
    assert runs[0].finished_at is not None
    stats = json.loads(runs[0].stats_json)
    assert stats["added"] == 1
    assert stats["linked"] == 0


@pytest.mark.asyncio
async def test_unknown_platform_raises(db) -> None:
    playlist_id = await _playlist(db, [])
    with pytest.raises(ValueError, match="deezer"):
        await _engine(db, MockAdapter()).reconcile(playlist_id, ["deezer"])


@pytest.mark.asyncio
async def test_unknown_playlist_raises(db) -> None:
    with pytest.raises(PlaylistNotFound):
        await _engine(db, MockAdapter()).reconcile(999)


# ---------------------------------------------------------------------------
# Connections and imports
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_existing_remote_playlist_merges_both_sides(db) -> None:
    adapter = MockAdapter(remote=[_remote("Hello", "Adele", "v1"), _remote("Imagine", "John Lennon", "v9")])
    playlist_id = await _playlist(db, [HELLO], connect=())
    engine = _engine(db, adapter)

    connection = await engine.connect_remote(playlist_id, "youtube", "PL-existing")
    assert connection.remote_url == "https://music.example/youtube/PL-existing"

    report = await engine.reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert adapter.created == 0
    assert adapter.ops("fetch") == ["PL-existing"]
    assert outcome.linked == 1
    assert outcome.imported == 1
    playlist = await db.load_playlist(playlist_id)
    assert [t.platform_ids.get("youtube") for t in playlist.tracks] == ["v1", "v9"]


@pytest.mark.asyncio
async def test_connect_replaces_previous_sync_history(db) -> None:
    playlist_id = await _playlist(db, [HELLO], synced_ids=["old1", "old2"])

    await _engine(db, MockAdapter()).connect_remote(playlist_id, "youtube", "PL-other")

    connection = await db.get_sync_state(playlist_id, "youtube")
    assert connection.platform_playlist_id == "PL-other"
    assert connection.synced_ids == []
    assert connection.sync_status == "pending"


@pytest.mark.asyncio
async def test_connect_rejects_unknown_platform_and_playlist(db) -> None:
    playlist_id = await _playlist(db, [], connect=())
    engine = _engine(db, MockAdapter())

    with pytest.raises(ValueError, match="deezer"):
        await engine.connect_remote(playlist_id, "deezer", "x")
    with pytest.raises(PlaylistNotFound):
        await engine.connect_remote(999, "youtube", "x")


@pytest.mark.asyncio
async def test_connect_and_disconnect_refused_while_syncing(db) -> None:
    adapter = MockAdapter()
    adapter.entered = asyncio.Event()
    adapter.gate = asyncio.Event()
    playlist_id = await _playlist(db, [])
    engine = _engine(db, adapter)

    running = asyncio.create_task(engine.reconcile(playlist_id))
    await adapter.entered.wait()
    with pytest.raises(SyncInProgress):
        await engine.connect_remote(playlist_id, "youtube", "PL-other")
    with pytest.raises(SyncInProgress):
        await engine.disconnect(playlist_id, "youtube")
    adapter.gate.set()
    await running

    connection = await db.get_sync_state(playlist_id, "youtube")
    assert connection.platform_playlist_id == "youtube-remote"


@pytest.mark.asyncio
async def test_disconnect_forgets_connection_only(db) -> None:
    adapter = MockAdapter(remote=[_remote("Hello", "Adele", "v1")])
    tracks = [PlaylistTrack(title="Hello", artist="Adele", platform_ids={"youtube": "v1"})]
    playlist_id = await _playlist(db, tracks)
    engine = _engine(db, adapter)

    assert await engine.disconnect(playlist_id, "youtube") is True
    assert await engine.disconnect(playlist_id, "youtube") is False

    playlist = await db.load_playlist(playlist_id)
    assert playlist.connections == {}
    assert playlist.tracks[0].platform_ids == {"youtube": "v1"}
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_import_remote_creates_local_copy(db) -> None:
    adapter = MockAdapter(
        remote=[_remote("Hello", "Adele", "v1"), _remote("Yesterday", "The Beatles", "v2")],
    )
    engine = _engine(db, adapter)

    report = await engine.import_remote("youtube", "PL-source", name="Imported")

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.imported == 2
    assert outcome.added == 0
    playlist = await db.load_playlist(report.playlist_id)
    assert playlist.name == "Imported"
    assert [t.title for t in playlist.tracks] == ["Hello", "Yesterday"]
    connection = playlist.connections["youtube"]
    assert connection.platform_playlist_id == "PL-source"
    assert connection.synced_ids == ["v1", "v2"]


@pytest.mark.asyncio
async def test_removing_local_track_propagates_on_next_sync(db) -> None:
    adapter = MockAdapter(
        catalog=[_remote("Hello", "Adele", "v1"), _remote("Yesterday", "The Beatles", "v2")],
    )
    playlist_id = await _playlist(db, [HELLO, YESTERDAY])
    engine = _engine(db, adapter, propagate_deletions=True)
    await engine.reconcile(playlist_id)

    playlist = await db.load_playlist(playlist_id)
    await db.remove_track(playlist_id, playlist.tracks[1].id)
    report = await engine.reconcile(playlist_id)

    outcome = report.per_platform["youtube"]
    assert outcome.status is SyncPhase.SYNCED
    assert outcome.removed == 1
    assert [t.platform_id for t in adapter.remote] == ["v1"]
