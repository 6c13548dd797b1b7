from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable

import httpx

from wecom_bridge.config import DEFAULT_WECOM_API_BASE
from wecom_bridge.domain.errors import TokenFetchError
from wecom_bridge.observability import incr_metric, log_event


_EP_GET_TOKEN = "/cgi-bin/gettoken"
DEFAULT_TOKEN_TTL_SECONDS = 7200
# Served from cache only while now + REFRESH_GUARD < expires_at.
REFRESH_GUARD_SECONDS = 5 * 60
# Subtracted from the upstream TTL when a token is stored.
SAFETY_MARGIN_SECONDS = 10 * 60


@dataclass(frozen=True)
class AccessTokenEntry:
    token: str
    expires_at: float


def _fetch_token(
    *,
    base_url: str,
    corp_id: str,
    corp_secret: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    url = f"{base_url.rstrip('/')}{_EP_GET_TOKEN}"
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            response = client.get(url, params={"corpid": corp_id, "corpsecret": corp_secret})
    except httpx.HTTPError as exc:
        raise TokenFetchError(None, f"connectivity error: {exc}") from exc

    if response.status_code >= 400:
        raise TokenFetchError(response.status_code, f"HTTP {response.status_code}: {response.text[:200]}")
    try:
        data = response.json()
    except ValueError as exc:
        raise TokenFetchError(None, "non-JSON token response") from exc
    if not isinstance(data, dict):
        raise TokenFetchError(None, "unexpected token response type")
    return data


class AccessTokenCache:
    """Caches one bearer token per (corp_id, corp_secret) pair.

    Concurrent misses for the same key may each fetch; the last writer wins.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_WECOM_API_BASE,
        timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], AccessTokenEntry] = {}
        self._lock = Lock()

    def peek(self, corp_id: str, corp_secret: str) -> AccessTokenEntry | None:
        with self._lock:
            return self._entries.get((corp_id, corp_secret))

    def get_token(self, corp_id: str, corp_secret: str) -> str:
        key = (corp_id, corp_secret)
        now = self._clock()
        with self._lock:
            cached = self._entries.get(key)
        if cached is not None and now + REFRESH_GUARD_SECONDS < cached.expires_at:
            return cached.token

        data = _fetch_token(
            base_url=self._base_url,
            corp_id=corp_id,
            corp_secret=corp_secret,
            timeout_seconds=self._timeout_seconds,
        )
        errcode = data.get("errcode", 0)
        if errcode != 0:
            incr_metric("token.fetch.failed", corp_id=corp_id)
            raise TokenFetchError(errcode, str(data.get("errmsg", "")))
        token = data.get("access_token")
        if not token:
            raise TokenFetchError(None, "token response has no access_token")

        ttl = data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS
        entry = AccessTokenEntry(
            token=str(token),
            expires_at=self._clock() + float(ttl) - SAFETY_MARGIN_SECONDS,
        )
        with self._lock:
            self._entries[key] = entry
        incr_metric("token.fetch.succeeded", corp_id=corp_id)
        log_event("access_token_refreshed", corp_id=corp_id, expires_in=ttl)
        return entry.token

    def evict(self, corp_id: str, corp_secret: str) -> None:
        with self._lock:
            removed = self._entries.pop((corp_id, corp_secret), None)
        if removed is not None:
            incr_metric("token.evicted", corp_id=corp_id)
            log_event("access_token_evicted", level=logging.WARNING, corp_id=corp_id)
