"""Wires configuration, storage, credentials and platform adapters together."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass

import httpx
import structlog

from musync.auth import OAuthCredentialProvider
from musync.config import AppConfig, QuotaConfig
from musync.storage import Database
from musync.sync.client import ResilientClient, ResponseCache
from musync.sync.engine import ReconciliationEngine
from musync.sync.quota import QuotaTracker
from musync.sync.spotify import SpotifyAdapter
from musync.sync.youtube import YouTubeAdapter

log = structlog.get_logger(__name__)


@dataclass
class Runtime:
    config: AppConfig
    db: Database
    engine: ReconciliationEngine
    quotas: dict[str, QuotaTracker]


def _tracker(cfg: QuotaConfig) -> QuotaTracker:
    return QuotaTracker(cfg.daily_budget, cfg.safety_threshold)


def _client(
    config: AppConfig,
    quota: QuotaTracker,
    *,
    fallback_api_key: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ResilientClient:
    return ResilientClient(
        quota,
        fallback_api_key=fallback_api_key,
        max_retries=config.client.max_retries,
        min_backoff=config.client.min_backoff,
        cache=ResponseCache(config.client.cache_ttl_seconds),
        _transport=transport,
    )


@asynccontextmanager
async def open_runtime(
    config: AppConfig,
    *,
    _transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Runtime]:
    """Open the database and remote clients; close everything on exit."""
    quotas = {
        "spotify": _tracker(config.spotify.quota),
        "youtube": _tracker(config.youtube.quota),
    }

    async with AsyncExitStack() as stack:
        db = Database(config.db_path)
        await db.connect()
        stack.push_async_callback(db.close)

        credentials = await stack.enter_async_context(
            OAuthCredentialProvider(config, _transport=_transport)
        )
        spotify = await stack.enter_async_context(
            SpotifyAdapter(_client(config, quotas["spotify"], transport=_transport))
        )
        youtube = await stack.enter_async_context(
            YouTubeAdapter(
                _client(
                    config,
                    quotas["youtube"],
                    fallback_api_key=config.youtube.api_key.get_secret_value() or None,
                    transport=_transport,
                )
            )
        )

        engine = ReconciliationEngine(
            config,
            db,
            {"spotify": spotify, "youtube": youtube},
            credentials,
        )
        log.debug("runtime_opened", db=str(config.db_path))
        yield Runtime(config=config, db=db, engine=engine, quotas=quotas)
