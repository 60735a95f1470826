"""Time-bounded memory of processed webhook event ids."""

import asyncio
import time
from typing import Callable, Optional

import redis.asyncio as redis_async

from chatbridge.logging_config import get_logger

logger = get_logger("dedup_service")

DEFAULT_TTL_SECONDS = 3600


class DedupCache:
    """In-process dedup window. Resets on restart."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    async def has_seen(self, event_id: str) -> bool:
        first_seen = self._seen.get(event_id)
        if first_seen is None:
            return False
        return self._clock() - first_seen < self.ttl_seconds

    async def mark_seen(self, event_id: str) -> None:
        self._seen.setdefault(event_id, self._clock())

    async def is_duplicate(self, event_id: Optional[str]) -> bool:
        """Check and mark in one step. Events without an id are never duplicates."""
        if not event_id:
            return False
        if await self.has_seen(event_id):
            logger.info("Duplicate event skipped", extra={"context": {"event_id": event_id}})
            return True
        self._seen[event_id] = self._clock()
        return False

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [event_id for event_id, seen_at in self._seen.items() if now - seen_at >= self.ttl_seconds]
        for event_id in expired:
            del self._seen[event_id]
        return len(expired)

    async def run_sweeper(self, interval_seconds: float, sleep_func=asyncio.sleep) -> None:
        """Purge expired entries every `interval_seconds` until cancelled."""
        while True:
            await sleep_func(interval_seconds)
            removed = self.purge_expired()
            if removed:
                logger.debug(f"Dedup sweep removed {removed} entries", extra={"context": {"remaining": len(self)}})

    async def aclose(self) -> None:
        self._seen.clear()


class RedisDedupCache:
    """Dedup window shared by several worker processes through Redis."""

    def __init__(self, client, ttl_seconds: int = DEFAULT_TTL_SECONDS, prefix: str = "chatbridge:dedup:"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS, socket_timeout_seconds: float = 0.3):
        client = redis_async.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client, ttl_seconds=ttl_seconds)

    def _key(self, event_id: str) -> str:
        return f"{self.prefix}{event_id}"

    async def has_seen(self, event_id: str) -> bool:
        try:
            return bool(await self.client.exists(self._key(event_id)))
        except Exception as e:
            logger.warning(f"Dedup redis unavailable, treating event as new: {e}")
            return False

    async def mark_seen(self, event_id: str) -> None:
        try:
            await self.client.set(self._key(event_id), "1", ex=self.ttl_seconds, nx=True)
        except Exception as e:
            logger.warning(f"Dedup redis unavailable, event not marked: {e}")

    async def is_duplicate(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        try:
            was_set = await self.client.set(self._key(event_id), "1", ex=self.ttl_seconds, nx=True)
        except Exception as e:
            logger.warning(f"Dedup redis unavailable, treating event as new: {e}")
            return False
        if not was_set:
            logger.info("Duplicate event skipped", extra={"context": {"event_id": event_id}})
            return True
        return False

    def purge_expired(self) -> int:
        # redis expires keys itself
        return 0

    async def run_sweeper(self, interval_seconds: float, sleep_func=asyncio.sleep) -> None:
        return None

    async def aclose(self) -> None:
        await self.client.aclose()


def build_dedup_cache(settings):
    if settings.dedup_redis_url:
        logger.info("Using redis dedup cache")
        return RedisDedupCache.from_url(settings.dedup_redis_url, ttl_seconds=settings.dedup_ttl_seconds)
    return DedupCache(ttl_seconds=settings.dedup_ttl_seconds)
