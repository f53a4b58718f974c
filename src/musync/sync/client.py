"""Resilient async HTTP client for remote catalog APIs.

Wraps one ``httpx.AsyncClient`` and turns "call the remote platform" into a
single mostly-reliable operation:

- quota pre-check before every attempt (no network call when over budget)
- exponential backoff with jitter on throttling and transient failures
- one-shot fallback to a static API key when the bearer token is rejected
  (read-only requests only)
- a short-lived cache for successful GET responses
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum

import httpx
import structlog

from musync.sync.quota import OperationType, QuotaExceeded, QuotaTracker

log = structlog.get_logger(__name__)

MIN_CREDENTIAL_LENGTH = 20
DEFAULT_MAX_RETRIES = 3
DEFAULT_MIN_BACKOFF = 1.0
DEFAULT_CACHE_TTL = 300.0
_MAX_RETRY_AFTER = 60.0
_QUOTA_PENALTY = OperationType.READ_HEAVY
_QUOTA_REASONS = frozenset(
    {"quotaExceeded", "dailyLimitExceeded", "rateLimitExceeded", "userRateLimitExceeded"}
)
_TRANSIENT_STATUSES = frozenset({500, 502, 503, 504})


class AuthError(Exception):
    """Raised when the remote API rejects every credential we have."""


class TransientNetworkError(Exception):
    """Raised when network failures persist after all retries."""


class RemoteAPIError(Exception):
    """Raised for non-retryable remote API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFound(RemoteAPIError):
    """Raised when the remote resource does not exist (HTTP 404)."""


# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------


class ResponseCache:
    """TTL cache of successful GET responses keyed by full request URL."""

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, httpx.Response]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._evict_locked()
            return len(self._entries)

    def get(self, key: str) -> httpx.Response | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, response = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return response

    def put(self, key: str, response: httpx.Response) -> None:
        if not response.is_success:
            return
        with self._lock:
            self._evict_locked()
            self._entries[key] = (self._clock() + self.ttl, response)

    def invalidate(self, prefix: str | None = None) -> int:
        """Drop every entry (or those whose key starts with *prefix*)."""
        with self._lock:
            if prefix is None:
                dropped = len(self._entries)
                self._entries.clear()
                return dropped
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def _evict_locked(self) -> None:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for k in expired:
            del self._entries[k]


# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------


class _Verdict(StrEnum):
    SUCCESS = "success"
    QUOTA = "quota"
    TRANSIENT = "transient"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    FATAL = "fatal"


def _safe_json(resp: httpx.Response) -> object:
    try:
        return resp.json()
    except ValueError:
        return None


def is_quota_response(resp: httpx.Response) -> bool:
    """True for throttling responses and 403s whose payload names a quota reason."""
    if resp.status_code == 429:
        return True
    if resp.status_code != 403:
        return False

    payload = _safe_json(resp)
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return False
    for item in error.get("errors", []) or []:
        if isinstance(item, dict) and item.get("reason") in _QUOTA_REASONS:
            return True
    return "quota" in str(error.get("message", "")).lower()


def classify_response(resp: httpx.Response) -> _Verdict:
    if resp.is_success:
        return _Verdict.SUCCESS
    if is_quota_response(resp):
        return _Verdict.QUOTA
    if resp.status_code in (401, 403):
        return _Verdict.AUTH
    if resp.status_code == 404:
        return _Verdict.NOT_FOUND
    if resp.status_code in _TRANSIENT_STATUSES:
        return _Verdict.TRANSIENT
    return _Verdict.FATAL


def _retry_after(resp: httpx.Response) -> float:
    try:
        return min(float(resp.headers.get("Retry-After", "0")), _MAX_RETRY_AFTER)
    except ValueError:
        return 0.0


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ResilientClient:
    """Quota-aware async HTTP client with retry, backoff and credential fallback."""

    def __init__(
        self,
        quota: QuotaTracker,
        *,
        fallback_api_key: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        min_backoff: float = DEFAULT_MIN_BACKOFF,
        cache: ResponseCache | None = None,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_retries < 1:
            msg = "max_retries must be at least 1"
            raise ValueError(msg)
        self.quota = quota
        self._fallback_api_key = fallback_api_key or None
        self._max_retries = max_retries
        self._min_backoff = min_backoff
        self._cache = cache if cache is not None else ResponseCache()
        self._timeout = timeout
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ResilientClient:
        kw: dict = {"timeout": self._timeout}
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def has_fallback(self) -> bool:
        return self._fallback_api_key is not None

    def backoff_delay(self, attempt: int) -> float:
        """``min_backoff * 2**attempt`` plus jitter in ``[0, min_backoff)``.

        Jitter never exceeds the growth between two consecutive attempts, so
        successive delays are non-decreasing.
        """
        return self._min_backoff * (2**attempt) + self._rng.uniform(0, self._min_backoff)

    def _auth(
        self,
        credentials: str | None,
        params: dict | None,
        use_fallback: bool,
    ) -> tuple[dict, dict | None]:
        if use_fallback:
            return {}, {**(params or {}), "key": self._fallback_api_key}
        return {"Authorization": f"Bearer {credentials}"}, params

    async def call(
        self,
        method: str,
        url: str,
        *,
        credentials: str | None,
        op_type: OperationType,
        params: dict | None = None,
        json: dict | list | None = None,
        max_retries: int | None = None,
    ) -> httpx.Response:
        """Perform one logical request and return the successful response.

        Raises:
            QuotaExceeded: the local budget would be crossed, or the remote
                side kept reporting quota exhaustion.
            AuthError: the bearer token (and fallback key, if any) was rejected.
            TransientNetworkError: network failures outlasted the retries.
            RemoteNotFound / RemoteAPIError: other non-retryable errors.
        """
        assert self._client is not None  # noqa: S101

        method = method.upper()
        is_read = method == "GET"
        cache_key = str(httpx.URL(url).copy_merge_params(params or {})) if is_read else None

        if cache_key is not None:
            try:
                cached = self._cache.get(cache_key)
            except Exception as exc:
                log.warning("cache_read_failed", url=cache_key, error=str(exc))
                cached = None
            if cached is not None:
                log.debug("cache_hit", url=cache_key)
                return cached

        attempts = max_retries or self._max_retries
        can_fallback = is_read and self.has_fallback
        use_fallback = can_fallback and (not credentials or len(credentials) < MIN_CREDENTIAL_LENGTH)
        fallback_tried = use_fallback
        if use_fallback:
            log.debug("using_fallback_key", url=url)
        elif not credentials:
            raise AuthError(f"No credentials for {method} {url}")

        attempt = 0
        last_wait = 0.0
        while True:
            self.quota.check_before_operation(op_type)
            headers, req_params = self._auth(credentials, params, use_fallback)

            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=headers,
                    params=req_params,
                    json=json,
                )
            except httpx.TransportError as exc:
                if attempt >= attempts - 1:
                    raise TransientNetworkError(
                        f"Network error after {attempts} attempts: {exc}"
                    ) from exc
                wait = max(self.backoff_delay(attempt), last_wait)
                last_wait = wait
                log.warning(
                    "remote_network_error",
                    url=url,
                    error=str(exc),
                    retry_in=round(wait, 3),
                    attempt=attempt,
                )
                await self._sleep(wait)
                attempt += 1
                continue

            verdict = classify_response(resp)

            if verdict is _Verdict.SUCCESS:
                self.quota.record_usage(op_type)
                if cache_key is not None:
                    self._cache.put(cache_key, resp)
                else:
                    written = httpx.URL(url)
                    self._cache.invalidate(f"{written.scheme}://{written.host}")
                return resp

            if verdict is _Verdict.AUTH:
                if can_fallback and not fallback_tried:
                    log.warning("remote_auth_rejected_using_fallback", url=url, status=resp.status_code)
                    use_fallback = True
                    fallback_tried = True
                    continue
                raise AuthError(f"Authentication failed: {resp.status_code} {resp.text}")

            if verdict is _Verdict.NOT_FOUND:
                raise RemoteNotFound(f"Not found: {method} {url}", status_code=404)

            if verdict is _Verdict.FATAL:
                raise RemoteAPIError(
                    f"Remote API error: {resp.status_code} {resp.text}",
                    status_code=resp.status_code,
                )

            if verdict is _Verdict.QUOTA:
                self.quota.record_usage(_QUOTA_PENALTY)
                if attempt >= attempts - 1:
                    raise QuotaExceeded(
                        f"Remote quota exhausted after {attempts} attempts ({resp.status_code})"
                    )
                wait = max(self.backoff_delay(attempt), _retry_after(resp), last_wait)
                log.warning(
                    "remote_rate_limited",
                    url=url,
                    status=resp.status_code,
                    retry_in=round(wait, 3),
                    attempt=attempt,
                )
            else:  # transient server error
                if attempt >= attempts - 1:
                    raise TransientNetworkError(
                        f"Server error {resp.status_code} after {attempts} attempts"
                    )
                wait = max(self.backoff_delay(attempt), last_wait)
                log.warning(
                    "remote_server_error",
                    url=url,
                    status=resp.status_code,
                    retry_in=round(wait, 3),
                    attempt=attempt,
                )

            last_wait = wait
            await self._sleep(wait)
            attempt += 1
