#!/usr/bin/env python3
"""
OCR Result Cache
================
Read-through/write-through cache of parsed receipts keyed by image content,
so identical uploads never hit the recognizer twice.

Features:
- Cache key derived from the image bytes (fingerprint or SHA-256)
- Pluggable TTL stores: in-process (thread-safe) or Redis
- Misses on absent, expired, unreadable or stale-parser payloads
- Writes raise CacheWriteFailure so the caller decides how loud to be

Usage:
    cache = ResultCache(InMemoryTTLStore(), ttl_seconds=86400)
    key = cache.key_for(image_bytes)
    receipt = cache.get(key)
    if receipt is None:
        receipt = parse(...)
        cache.put(key, receipt)
"""

import hashlib
import json
import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

import redis

from .errors import CacheWriteFailure
from .models import ParsedReceipt
from .receipt_parser import PARSER_VERSION

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "ocr:receipt:"
DEFAULT_TTL_SECONDS = 24 * 60 * 60

# Images shorter than this are keyed by length only
FINGERPRINT_EDGE_BYTES = 32

DEFAULT_MAX_ENTRIES = 10000
DEFAULT_SWEEP_INTERVAL = 60.0


# =============================================================================
# KEY DERIVATION
# =============================================================================

def derive_cache_key(image_data: bytes) -> str:
    """
    Cheap fingerprint: length for tiny payloads, otherwise the hex of the
    first and last 32 bytes. Not collision resistant; see content_hash_key.
    """
    if len(image_data) < FINGERPRINT_EDGE_BYTES * 2:
        return f"{CACHE_KEY_PREFIX}{len(image_data)}"
    head = image_data[:FINGERPRINT_EDGE_BYTES].hex()
    tail = image_data[-FINGERPRINT_EDGE_BYTES:].hex()
    return f"{CACHE_KEY_PREFIX}{head}{tail}"


def content_hash_key(image_data: bytes) -> str:
    """SHA-256 of the full image"""
    return f"{CACHE_KEY_PREFIX}sha256:{hashlib.sha256(image_data).hexdigest()}"


KEY_STRATEGIES: Dict[str, Callable[[bytes], str]] = {
    "fingerprint": derive_cache_key,
    "sha256": content_hash_key,
}


# =============================================================================
# STORES
# =============================================================================

class InMemoryTTLStore:
    """
    Process-local TTL store.

    Expired keys are dropped on read and by a periodic sweep on write, so keys
    that are never read again do not accumulate. When max_entries is reached
    the oldest written entry is evicted.

    Args:
        clock: Monotonic time source
        max_entries: Upper bound on stored keys
        sweep_interval: Minimum seconds between expiry sweeps
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self._lock = threading.RLock()
        self._data: Dict[str, Tuple[bytes, float]] = {}
        self._clock = clock
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None

            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._data[key]
                return None

            return value

    def set(self, key: str, value: bytes, ttl_seconds: float) -> None:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)

            # Re-inserting moves the key to the newest position
            self._data.pop(key, None)
            while len(self._data) >= self.max_entries:
                oldest = next(iter(self._data))
                del self._data[oldest]

            self._data[key] = (value, now + ttl_seconds)

    def _sweep(self, now: float):
        """Drop every expired entry. Caller holds the lock."""
        expired = [k for k, (_, expires_at) in self._data.items() if now >= expires_at]
        for k in expired:
            del self._data[k]
        self._next_sweep = now + self.sweep_interval
        if expired:
            logger.debug(f"Swept {len(expired)} expired OCR cache entries")

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisTTLStore:
    """TTL store backed by Redis (SET ... EX ttl)"""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisTTLStore":
        return cls(redis.Redis.from_url(url))

    def get(self, key: str) -> Optional[bytes]:
        return self.client.get(key)

    def set(self, key: str, value: bytes, ttl_seconds: float) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))


# =============================================================================
# RESULT CACHE
# =============================================================================

class ResultCache:
    """
    Parsed-receipt cache on top of a TTL store.

    Args:
        store: Object with get(key) -> Optional[bytes] and set(key, value, ttl_seconds)
        ttl_seconds: Default expiry for new entries
        key_func: image bytes -> cache key
        parser_version: Entries written by a different parser version are misses
    """

    def __init__(
        self,
        store,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        key_func: Callable[[bytes], str] = derive_cache_key,
        parser_version: str = PARSER_VERSION,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key_func = key_func
        self.parser_version = parser_version

    def key_for(self, image_data: bytes) -> str:
        return self.key_func(image_data)

    def get(self, key: str) -> Optional[ParsedReceipt]:
        """Return the cached receipt, or None on any kind of miss."""
        try:
            raw = self.store.get(key)
        except Exception as e:
            logger.warning(f"OCR cache read failed for {key[:40]}: {e}")
            return None

        if raw is None:
            return None

        try:
            payload = json.loads(raw)
            cached_version = payload.pop("parser_version", None)
            if cached_version is not None and cached_version != self.parser_version:
                logger.debug(f"Ignoring cache entry from parser v{cached_version}")
                return None
            return ParsedReceipt.from_dict(payload)
        except Exception as e:
            logger.warning(f"Discarding unreadable OCR cache entry {key[:40]}: {e}")
            return None

    def put(self, key: str, value: ParsedReceipt, ttl_seconds: Optional[float] = None) -> None:
        """
        Store a receipt.

        Raises:
            CacheWriteFailure: serialization or store error
        """
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        try:
            payload = value.to_dict()
            payload["parser_version"] = self.parser_version
            self.store.set(key, json.dumps(payload, ensure_ascii=False).encode("utf-8"), ttl)
        except Exception as e:
            raise CacheWriteFailure(f"Could not cache OCR result {key[:40]}: {e}") from e


__all__ = [
    "CACHE_KEY_PREFIX",
    "DEFAULT_TTL_SECONDS",
    "KEY_STRATEGIES",
    "derive_cache_key",
    "content_hash_key",
    "InMemoryTTLStore",
    "RedisTTLStore",
    "ResultCache",
]
