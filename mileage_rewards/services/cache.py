"""
Content-addressed cache for OCR and vision results.

Keys are `<namespace>:<md5 of the image reference>`. The backend is
optional: an `ExternalServiceCache` built without one always misses and
never raises, and a Redis failure is treated the same way as a miss.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from typing import Any, Optional

import redis

from ..core.config import settings


logger = logging.getLogger("cache")

ANALYSIS_NAMESPACE = "analysis"
VEHICLE_NAMESPACE = "vehicle"
OCR_NAMESPACE = "ocr"

ANALYSIS_TTL_SEC = 24 * 60 * 60
VEHICLE_TTL_SEC = 24 * 60 * 60
OCR_TTL_SEC = 60 * 60


class CacheBackend:
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        raise NotImplementedError


class RedisCacheBackend(CacheBackend):
    def __init__(self, url: str):
        self.redis_client = redis.from_url(url)

    def get(self, key: str) -> Optional[str]:
        value = self.redis_client.get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        self.redis_client.setex(key, ttl_seconds, value)


class InMemoryCacheBackend(CacheBackend):
    """Process-local TTL store, used in tests and single-process deployments."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._items: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= self._clock():
                self._items.pop(key, None)
                return None
            return value

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        with self._lock:
            self._items[key] = (self._clock() + ttl_seconds, value)


def image_key(namespace: str, image_ref: str) -> str:
    digest = hashlib.md5(image_ref.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class ExternalServiceCache:
    def __init__(self, backend: Optional[CacheBackend] = None):
        self.backend = backend

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    def get(self, namespace: str, image_ref: str) -> Optional[Any]:
        if self.backend is None:
            return None
        key = image_key(namespace, image_ref)
        try:
            raw = self.backend.get(key)
        except Exception as exc:
            logger.warning("Cache get failed key=%s err=%s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Cache entry is not valid JSON key=%s", key)
            return None

    def set(self, namespace: str, image_ref: str, value: Any, ttl_seconds: int) -> None:
        if self.backend is None:
            return
        key = image_key(namespace, image_ref)
        try:
            self.backend.setex(key, ttl_seconds, json.dumps(value, default=str))
        except Exception as exc:
            logger.warning("Cache set failed key=%s err=%s", key, exc)


def build_cache(url: str | None = None) -> ExternalServiceCache:
    url = url if url is not None else settings.redis_url
    if not url:
        logger.info("Cache disabled (REDIS_URL not set)")
        return ExternalServiceCache(None)
    try:
        backend = RedisCacheBackend(url)
    except Exception as exc:
        logger.warning("Redis cache unavailable, continuing without cache: %s", exc)
        return ExternalServiceCache(None)
    logger.info("Cache enabled backend=redis")
    return ExternalServiceCache(backend)
