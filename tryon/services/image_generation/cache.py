"""
Result cache: content-addressed memoization of generated images.
Two tiers: a bounded process-local LRU, and a durable tier (redis or local directory)
with lazy expiry on read. Caching is an optimization: durable tier errors become misses
and swallowed writes, never request failures.
"""
import asyncio
import base64
import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import redis
import redis.asyncio as aioredis

from tryon.services.image_generation.base import ClothingRequest, GenerationRequest, TryOnRequest
from tryon.services.image_generation.codec import ImagePayload
from tryon.utils.metrics import cache_lookups_total, cache_write_failures_total

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 7


def fingerprint(kind: str, *parts: bytes) -> str:
    """
    Deterministic, order-sensitive digest. Every part is length-prefixed,
    so no content can forge a part boundary.
    """
    h = hashlib.sha256()
    h.update(kind.encode("utf-8"))
    for part in parts:
        h.update(len(part).to_bytes(8, "big"))
        h.update(part)
    return f"{kind}:{h.hexdigest()}"


def cache_key_for(request: GenerationRequest) -> str:
    """Key from request content only: image bytes (never MIME tags) or prompt text."""
    if isinstance(request, TryOnRequest):
        if request.person.data is None or request.clothing.data is None:
            raise ValueError("Try-on images must be resolved to bytes before keying")
        return fingerprint(request.kind, request.person.data, request.clothing.data)
    if isinstance(request, ClothingRequest):
        return fingerprint(request.kind, request.prompt.encode("utf-8"))
    raise TypeError(f"Unsupported request: {type(request).__name__}")


@dataclass(frozen=True)
class CacheEntry:
    value: ImagePayload
    created_at: float

    def dumps(self) -> str:
        return json.dumps({
            "t": self.created_at,
            "m": self.value.mime_type,
            "v": base64.standard_b64encode(self.value.data or b"").decode("ascii"),
        })

    @classmethod
    def loads(cls, raw: str | bytes) -> "CacheEntry":
        parsed = json.loads(raw)
        if not parsed.get("t") or not parsed.get("v"):
            raise ValueError("Incomplete cache entry")
        image = ImagePayload.from_bytes(base64.standard_b64decode(parsed["v"]), parsed.get("m"))
        return cls(value=image, created_at=float(parsed["t"]))


class MemoryTier:
    """Bounded LRU guarded by a lock; cleared with the process, so no expiry check."""

    def __init__(self, max_entries: int = 256) -> None:
        self.max_entries = max_entries
        self._items: OrderedDict[str, ImagePayload] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> ImagePayload | None:
        with self._lock:
            value = self._items.get(key)
            if value is not None:
                self._items.move_to_end(key)
            return value

    def set(self, key: str, value: ImagePayload) -> None:
        with self._lock:
            self._items[key] = value
            self._items.move_to_end(key)
            while len(self._items) > self.max_entries:
                self._items.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class DurableTier(ABC):
    """Durable key/value store holding serialized CacheEntry strings."""

    name = "durable"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, raw: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class RedisTier(DurableTier):
    """Redis-backed durable tier. Native EX is a sweeper backstop; expiry is still checked on read."""

    name = "redis"

    def __init__(self, client: aioredis.Redis, prefix: str = "tryon:cache:") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisTier":
        return cls(aioredis.Redis.from_url(url, decode_responses=True))

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> str | None:
        return await self.client.get(self._key(key))

    async def set(self, key: str, raw: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), raw, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def ping(self) -> bool:
        return await self.client.ping()

    async def aclose(self) -> None:
        await self.client.aclose()


class LocalDirectoryTier(DurableTier):
    """One JSON file per key under base_path."""

    name = "local"

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)

    def _path(self, key: str) -> Path:
        return self.base_path / (key.replace(":", "_") + ".json")

    def _read(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write(self, key: str, raw: str) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(raw, encoding="utf-8")
        tmp.replace(path)

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, raw: str, ttl_seconds: int) -> None:
        await asyncio.to_thread(self._write, key, raw)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink, missing_ok=True)


# Errors a durable tier may raise that must never fail a request
DURABLE_TIER_ERRORS = (redis.RedisError, OSError)


class ResultCache:
    """Memory tier first, then durable tier; writes go to both."""

    def __init__(
        self,
        memory: MemoryTier | None = None,
        durable: DurableTier | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.memory = memory or MemoryTier()
        self.durable = durable
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    async def get(self, key: str) -> ImagePayload | None:
        value = self.memory.get(key)
        if value is not None:
            cache_lookups_total.labels(tier="memory", result="hit").inc()
            return value
        cache_lookups_total.labels(tier="memory", result="miss").inc()

        if self.durable is None:
            return None
        try:
            raw = await self.durable.get(key)
        except DURABLE_TIER_ERRORS as e:
            cache_lookups_total.labels(tier="durable", result="error").inc()
            logger.warning(
                "cache_durable_read_failed",
                extra={"tier": self.durable.name, "cache_key": key, "error": f"{type(e).__name__}: {e}"},
            )
            return None
        if raw is None:
            cache_lookups_total.labels(tier="durable", result="miss").inc()
            return None

        try:
            entry = CacheEntry.loads(raw)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning("cache_entry_corrupt", extra={"tier": self.durable.name, "cache_key": key, "error": str(e)})
            await self._discard(key)
            cache_lookups_total.labels(tier="durable", result="miss").inc()
            return None

        if self.clock() - entry.created_at >= self.ttl_seconds:
            await self._discard(key)
            cache_lookups_total.labels(tier="durable", result="expired").inc()
            return None

        cache_lookups_total.labels(tier="durable", result="hit").inc()
        self.memory.set(key, entry.value)
        return entry.value

    async def put(self, key: str, value: ImagePayload) -> None:
        if value.data is None:
            raise ValueError("Only inline images are cached")
        self.memory.set(key, value)
        if self.durable is None:
            return
        entry = CacheEntry(value=value, created_at=self.clock())
        try:
            await self.durable.set(key, entry.dumps(), self.ttl_seconds)
        except DURABLE_TIER_ERRORS as e:
            cache_write_failures_total.inc()
            logger.warning(
                "cache_durable_write_failed",
                extra={"tier": self.durable.name, "cache_key": key, "error": f"{type(e).__name__}: {e}"},
            )

    async def aclose(self) -> None:
        if self.durable is not None:
            await self.durable.aclose()

    async def _discard(self, key: str) -> None:
        try:
            await self.durable.delete(key)
        except DURABLE_TIER_ERRORS as e:
            logger.warning("cache_durable_delete_failed", extra={"tier": self.durable.name, "cache_key": key, "error": str(e)})


def build_cache_from_settings(settings: Any) -> ResultCache:
    backend = getattr(settings, "cache_backend", "memory")
    durable: DurableTier | None = None
    if backend == "redis":
        if not settings.redis_url:
            raise ValueError("cache_backend=redis requires redis_url")
        durable = RedisTier.from_url(settings.redis_url)
    elif backend == "local":
        durable = LocalDirectoryTier(settings.cache_dir)
    logger.info("result_cache_configured", extra={"tier": durable.name if durable else "memory"})
    return ResultCache(
        memory=MemoryTier(settings.cache_memory_max_entries),
        durable=durable,
        ttl_seconds=settings.cache_ttl_seconds,
    )
