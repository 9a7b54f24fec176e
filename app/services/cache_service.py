"""
Asset cache service.

Keeps rendered assets (letterhead logos, signature images) as base64 data
URLs together with the URL they were fetched from, so documents render
without refetching and a changed source URL is detected.

    cache.get(key)                      -> data | None
    cache.put(key, data, source_url)
    cache.resolve(key, url)             -> data only if cached for that url
    cache.sync({key: url | None, ...})  -> refetch changed/missing, clear removed

Uses Redis when REDIS_URL points at a Redis server, else an in-memory
backend. Owned by the app (app.extensions["asset_cache"]) and created by
init_asset_cache(app).

Only http(s) URLs on ASSET_ALLOWED_HOSTS are fetched, capped at
ASSET_MAX_BYTES; anything else is rejected before any request is made.
"""

from __future__ import annotations

import base64
import logging
import functools
import threading
from urllib.parse import urlparse

import redis
import requests

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

KEY_PREFIX = "asset:"
FETCH_TIMEOUT = 10
MAX_ASSET_BYTES = 2 * 1024 * 1024
ALLOWED_SCHEMES = ("http", "https")

FETCHED = "fetched"
UNCHANGED = "unchanged"
CLEARED = "cleared"
FAILED = "failed"


# ── In-memory backend ────────────────────────────────────────────────────


class _MemoryBackend:
    """Dict cache for dev/testing (same subset of the Redis API)."""

    def __init__(self):
        self._store: dict = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._store.get(key)

    def set(self, key, value):
        with self._lock:
            self._store[key] = value

    def delete(self, *keys):
        with self._lock:
            for k in keys:
                self._store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        with self._lock:
            if pattern.endswith("*"):
                prefix = pattern[:-1]
                return [k for k in self._store if k.startswith(prefix)]
            return [k for k in self._store if k == pattern]

    def flushdb(self):
        with self._lock:
            self._store.clear()

    def ping(self):
        return True


def build_backend(redis_url: str | None):
    """Redis for redis:// URLs, memory otherwise (or when Redis is down)."""
    if redis_url and not redis_url.startswith("memory://"):
        try:
            backend = redis.from_url(redis_url, decode_responses=True)
            backend.ping()
            logger.info("Asset cache: using Redis at %s", redis_url.split("@")[-1])
            return backend
        except redis.exceptions.RedisError as exc:
            logger.warning("Redis unavailable (%s), falling back to memory cache", exc)
    return _MemoryBackend()


# ── Fetching ─────────────────────────────────────────────────────────────


class AssetTooLargeError(Exception):
    def __init__(self, url, max_bytes):
        self.url = url
        self.max_bytes = max_bytes
        super().__init__(f"Asset at {url} exceeds {max_bytes} bytes")


def check_url(url: str, allowed_hosts) -> None:
    """Raise ValidationError unless *url* is http(s) on an allowed host."""
    if not isinstance(url, str):
        raise ValidationError("Asset URL must be a string", details={"url": url})
    parsed = urlparse(url)
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise ValidationError(f"Unsupported asset URL scheme: {parsed.scheme or '(none)'}",
                              details={"url": url})
    host = (parsed.hostname or "").lower()
    if host not in allowed_hosts:
        raise ValidationError(f"Asset host not allowed: {host or '(none)'}",
                              details={"url": url, "allowed_hosts": sorted(allowed_hosts)})


def fetch_data_url(url: str, timeout: int = FETCH_TIMEOUT, max_bytes: int = MAX_ASSET_BYTES) -> str:
    """Download *url* (at most *max_bytes*, no redirects) as a base64 data URL."""
    with requests.get(url, timeout=timeout, stream=True, allow_redirects=False) as resp:
        resp.raise_for_status()
        if resp.is_redirect:
            raise requests.HTTPError(f"Redirect not followed for {url}", response=resp)
        declared = resp.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise AssetTooLargeError(url, max_bytes)
        body = bytearray()
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            body.extend(chunk)
            if len(body) > max_bytes:
                raise AssetTooLargeError(url, max_bytes)
        mime = (resp.headers.get("Content-Type") or "application/octet-stream").split(";")[0].strip()
    encoded = base64.b64encode(bytes(body)).decode("ascii")
    return f"data:{mime};base64,{encoded}"


# ── Cache ────────────────────────────────────────────────────────────────


class AssetCache:
    def __init__(self, backend=None, fetcher=None, allowed_hosts=(), max_bytes=MAX_ASSET_BYTES):
        self.backend = backend or _MemoryBackend()
        self.fetcher = fetcher or functools.partial(fetch_data_url, max_bytes=max_bytes)
        self.allowed_hosts = frozenset(h.lower() for h in allowed_hosts)

    @staticmethod
    def _data_key(key):
        return f"{KEY_PREFIX}{key}:data"

    @staticmethod
    def _src_key(key):
        return f"{KEY_PREFIX}{key}:src"

    def get(self, key):
        return self.backend.get(self._data_key(key))

    def source_url(self, key):
        return self.backend.get(self._src_key(key))

    def put(self, key, value, source_url):
        self.backend.set(self._data_key(key), value)
        self.backend.set(self._src_key(key), source_url)

    def invalidate(self, key):
        self.backend.delete(self._data_key(key), self._src_key(key))

    def resolve(self, key, url):
        """Cached data for *key*, but only if it was fetched from *url*."""
        if not url or self.source_url(key) != url:
            return None
        return self.get(key)

    def sync(self, targets: dict) -> dict:
        """Bring the cache in line with {key: url}. A None/empty url clears the key.

        Every URL is checked before anything is fetched or cleared.
        """
        for url in targets.values():
            if url:
                check_url(url, self.allowed_hosts)

        results = {}
        for key, url in targets.items():
            if not url:
                self.invalidate(key)
                results[key] = CLEARED
                continue
            if self.resolve(key, url) is not None:
                results[key] = UNCHANGED
                continue
            try:
                data = self.fetcher(url)
            except (requests.RequestException, AssetTooLargeError) as exc:
                logger.warning("Asset fetch failed for %s (%s)", key, exc)
                results[key] = FAILED
                continue
            self.put(key, data, url)
            results[key] = FETCHED
        return results

    def keys(self):
        suffix = ":src"
        return sorted(
            k[len(KEY_PREFIX):-len(suffix)]
            for k in self.backend.keys(f"{KEY_PREFIX}*")
            if k.endswith(suffix)
        )

    def clear(self):
        keys = self.backend.keys(f"{KEY_PREFIX}*")
        if keys:
            self.backend.delete(*keys)

    def health_check(self):
        try:
            self.backend.ping()
        except redis.exceptions.RedisError as exc:
            return {"status": "error", "detail": str(exc)}
        backend_type = "memory" if isinstance(self.backend, _MemoryBackend) else "redis"
        return {"status": "ok", "backend": backend_type}


def init_asset_cache(app, backend=None) -> AssetCache:
    cache = AssetCache(
        backend or build_backend(app.config.get("REDIS_URL")),
        allowed_hosts=app.config.get("ASSET_ALLOWED_HOSTS", ()),
        max_bytes=app.config.get("ASSET_MAX_BYTES", MAX_ASSET_BYTES),
    )
    app.extensions["asset_cache"] = cache
    return cache
