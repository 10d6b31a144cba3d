"""List-based queue store used by the worker and by producers.

The worker only relies on a handful of atomic list primitives, captured by
the :class:`QueueStore` protocol so the delivery engine can run against any
implementation. :class:`RedisQueueStore` is the production one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

import redis.asyncio as redis

from .logger import get_logger

logger = get_logger("EmailWorker.queue")


@dataclass(frozen=True)
class QueueNames:
    """Names of the lists shared by producers and worker instances."""

    main: str = "email_queue"
    processing: str = "email_processing"
    retry: str = "email_retry"
    logs: str = "email_logs"


class QueueStore(Protocol):
    """Atomic list operations the delivery engine depends on."""

    async def move(self, source: str, destination: str, timeout: float) -> Optional[str]:
        """Pop the tail of ``source`` and push it on the head of ``destination``.

        Blocks up to ``timeout`` seconds; returns ``None`` when nothing arrived.
        """

    async def push(self, name: str, value: str) -> int:
        """Push ``value`` on the head of ``name``; return the new length."""

    async def remove(self, name: str, value: str, count: int = 1) -> int:
        """Remove up to ``count`` occurrences of exactly ``value``."""

    async def range(self, name: str, start: int = 0, end: int = -1) -> List[str]:
        """Return the items between ``start`` and ``end`` (inclusive)."""

    async def trim(self, name: str, start: int, end: int) -> None:
        """Keep only the items between ``start`` and ``end`` (inclusive)."""

    async def length(self, name: str) -> int:
        """Return the number of items in ``name``."""

    async def ping(self) -> bool:
        """Check the store is reachable."""

    async def close(self) -> None:
        """Release the underlying connection."""


class RedisQueueStore:
    """:class:`QueueStore` backed by Redis lists."""

    def __init__(self, url: str = "redis://localhost:6379", client: Optional[redis.Redis] = None):
        self.url = url
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        return self._client

    async def move(self, source: str, destination: str, timeout: float) -> Optional[str]:
        # BLMOVE RIGHT LEFT is the non-deprecated spelling of BRPOPLPUSH
        return await self.client.blmove(source, destination, timeout, src="RIGHT", dest="LEFT")

    async def push(self, name: str, value: str) -> int:
        return await self.client.lpush(name, value)

    async def remove(self, name: str, value: str, count: int = 1) -> int:
        return await self.client.lrem(name, count, value)

    async def range(self, name: str, start: int = 0, end: int = -1) -> List[str]:
        return await self.client.lrange(name, start, end)

    async def trim(self, name: str, start: int, end: int) -> None:
        await self.client.ltrim(name, start, end)

    async def length(self, name: str) -> int:
        return await self.client.llen(name)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.aclose()
        logger.debug("Closed Redis connection to %s", self.url)
