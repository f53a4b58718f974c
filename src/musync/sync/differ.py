"""Track normalization, similarity scoring, cross-matching, and diff computation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

MATCH_THRESHOLD = 0.8
REMOVAL_GUARD_RATIO = 0.9

_TITLE_WEIGHT = 0.6
_ARTIST_WEIGHT = 0.4


@dataclass(frozen=True)
class Track:
    """A song as known to one side of a sync."""

    title: str
    artist: str
    album: str | None = None
    duration_seconds: int | None = None
    platform_id: str | None = None  # platform-native track/video ID
    platform: str | None = None  # "spotify" | "youtube"
    added_at: str | None = None  # ISO timestamp
    entry_id: str | None = None  # playlist-entry handle (YouTube playlistItem id)
    local_id: int | None = None  # row id when this is a view of a local track

    @property
    def is_resolved(self) -> bool:
        return bool(self.platform_id)


@dataclass(frozen=True)
class TrackPair:
    """Two tracks judged to be the same song."""

    source: Track
    target: Track
    score: float


@dataclass
class MatchResult:
    """Partition of two track lists into matched / unmatched buckets."""

    matched: list[TrackPair] = field(default_factory=list)
    unmatched_source: list[Track] = field(default_factory=list)
    unmatched_target: list[Track] = field(default_factory=list)


@dataclass
class SyncPlan:
    """Changes needed to bring a remote playlist and the local playlist together."""

    tracks_to_add_to_target: list[Track] = field(default_factory=list)
    tracks_to_add_to_source: list[Track] = field(default_factory=list)
    tracks_to_remove_from_target: list[Track] = field(default_factory=list)
    id_links: list[TrackPair] = field(default_factory=list)
    matched: list[TrackPair] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalization and similarity
# ---------------------------------------------------------------------------


def normalize(text: str | None) -> str:
    """Normalize a track title or artist name for comparison.

    Lower-cases, drops everything that is not a word character or
    whitespace, collapses whitespace runs and trims.
    """
    if not text:
        return ""
    text = text.lower()
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance with unit insert/delete/substitute costs."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    # Two-row DP over the shorter string
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(
                min(
                    previous[j] + 1,  # deletion
                    current[j - 1] + 1,  # insertion
                    previous[j - 1] + cost,  # substitution
                )
            )
        previous = current
    return previous[-1]


def string_similarity(a: str | None, b: str | None) -> float:
    """Similarity in [0, 1] between two free-text strings."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0

    norm_a = normalize(a)
    norm_b = normalize(b)
    if norm_a == norm_b:
        return 1.0

    longest = max(len(norm_a), len(norm_b))
    score = 1.0 - edit_distance(norm_a, norm_b) / longest
    return min(1.0, max(0.0, score))


def track_match_score(t1: Track, t2: Track) -> float:
    """Weighted title/artist similarity; titles are more stable across platforms."""
    return (
        _TITLE_WEIGHT * string_similarity(t1.title, t2.title)
        + _ARTIST_WEIGHT * string_similarity(t1.artist, t2.artist)
    )


def make_match_key(artist: str | None, title: str | None) -> str:
    """Create a normalized key from artist+title for dict-based matching."""
    return f"{normalize(artist)}|||{normalize(title)}"


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def match_tracks(
    source_tracks: list[Track],
    target_tracks: list[Track],
    threshold: float = MATCH_THRESHOLD,
) -> MatchResult:
    """Pair tracks across two lists.

    Exact pass first (identical normalized title and artist, score 1.0), then
    a greedy fuzzy pass: each remaining source track takes the best remaining
    target whose score exceeds *threshold*. Matched targets leave the pool.
    """
    result = MatchResult()

    # Exact pass: index remaining targets by key, first-come first-served
    target_index: dict[str, list[int]] = {}
    for idx, t in enumerate(target_tracks):
        target_index.setdefault(make_match_key(t.artist, t.title), []).append(idx)

    taken: set[int] = set()
    remaining_source: list[Track] = []
    for src in source_tracks:
        candidates = target_index.get(make_match_key(src.artist, src.title))
        if candidates:
            idx = candidates.pop(0)
            taken.add(idx)
            result.matched.append(TrackPair(source=src, target=target_tracks[idx], score=1.0))
        else:
            remaining_source.append(src)

    pool = [t for idx, t in enumerate(target_tracks) if idx not in taken]

    # Fuzzy pass
    for src in remaining_source:
        best_index = -1
        best_score = threshold
        for idx, candidate in enumerate(pool):
            score = track_match_score(src, candidate)
            if score > best_score:
                best_score = score
                best_index = idx

        if best_index >= 0:
            result.matched.append(TrackPair(source=src, target=pool.pop(best_index), score=best_score))
        else:
            result.unmatched_source.append(src)

    result.unmatched_target = pool
    return result


def pair_by_platform_id(
    local_tracks: list[Track],
    remote_tracks: list[Track],
) -> tuple[list[TrackPair], list[Track], list[Track]]:
    """Pair local and remote tracks that already share a platform-native ID.

    Returns:
        (pairs, unpaired_local, unpaired_remote)
    """
    remote_by_id: dict[str, list[Track]] = {}
    for t in remote_tracks:
        if t.platform_id:
            remote_by_id.setdefault(t.platform_id, []).append(t)

    pairs: list[TrackPair] = []
    unpaired_local: list[Track] = []
    for t in local_tracks:
        bucket = remote_by_id.get(t.platform_id) if t.platform_id else None
        if bucket:
            pairs.append(TrackPair(source=t, target=bucket.pop(0), score=1.0))
        else:
            unpaired_local.append(t)

    # Keep remote order stable for the leftovers
    leftover_ids = {id(t) for bucket in remote_by_id.values() for t in bucket}
    unpaired_remote = [t for t in remote_tracks if id(t) in leftover_ids or not t.platform_id]
    return pairs, unpaired_local, unpaired_remote


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan_changes(
    local_tracks: list[Track],
    remote_tracks: list[Track],
    *,
    synced_ids: set[str] | frozenset[str] = frozenset(),
    propagate_deletions: bool = False,
    threshold: float = MATCH_THRESHOLD,
) -> SyncPlan:
    """Compute the add/import/remove plan for one platform.

    *local_tracks* are projections of the local playlist onto the platform
    (``platform_id`` is the local record's ID for that platform, if any).

    Remote-only tracks are imported into the local playlist, unless deletions
    are propagated and the track was present after the previous sync: then
    it is a removal candidate, since it must have been deleted locally.
    A duplicate whose ID is still matched to a local track stays put.
    """
    id_pairs, local_rest, remote_rest = pair_by_platform_id(local_tracks, remote_tracks)
    matched = match_tracks(local_rest, remote_rest, threshold)

    plan = SyncPlan(matched=[*id_pairs, *matched.matched])
    plan.id_links = [
        pair
        for pair in matched.matched
        if pair.target.platform_id and pair.source.platform_id != pair.target.platform_id
    ]
    plan.tracks_to_add_to_target = list(matched.unmatched_source)

    # Removing by ID drops every copy on the remote, matched ones included.
    kept_ids = {p.target.platform_id for p in plan.matched if p.target.platform_id}
    for remote in matched.unmatched_target:
        if propagate_deletions and remote.platform_id and remote.platform_id in synced_ids:
            if remote.platform_id not in kept_ids:
                plan.tracks_to_remove_from_target.append(remote)
        else:
            plan.tracks_to_add_to_source.append(remote)

    return plan


def exceeds_removal_guard(
    removal_count: int,
    remote_size: int,
    ratio: float = REMOVAL_GUARD_RATIO,
) -> bool:
    """Return True if removing *removal_count* of *remote_size* tracks looks like a wipe."""
    if removal_count <= 0:
        return False
    return removal_count > remote_size * ratio
