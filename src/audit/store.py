"""Local durable store for the audit ring, the retry queue and alerts.

Collections are newest-first lists of JSON strings. `push` with a
`max_len` trims the tail in the same step, which gives the bounded ring:
after N+k pushes exactly the N most recent items remain.

Two backends:
- RedisLocalStore — LPUSH + LTRIM inside a MULTI pipeline, so concurrent
  writers from any process see an atomic append-and-trim. In-place updates
  go through WATCH/MULTI and match by value.
- MemoryLocalStore — one asyncio lock per store, for development and tests.

Errors propagate from here; the recorder decides what to swallow.
"""

from __future__ import annotations

import abc
import asyncio
import logging

from redis.exceptions import WatchError

logger = logging.getLogger(__name__)


class LocalStore(abc.ABC):
    """Newest-first list collections keyed by name."""

    @abc.abstractmethod
    async def push(self, key: str, item: str, max_len: int | None = None) -> None:
        """Prepend `item`; when `max_len` is given drop everything past it."""

    @abc.abstractmethod
    async def items(self, key: str) -> list[str]:
        """All items, newest first. Missing collections are empty."""

    @abc.abstractmethod
    async def remove(self, key: str, item: str) -> int:
        """Remove one occurrence of `item`. Returns how many were removed."""

    @abc.abstractmethod
    async def replace_item(self, key: str, old: str, new: str) -> bool:
        """Atomically swap the first occurrence of `old` for `new`.

        Matches by value, not position, so concurrent pushes can't redirect
        the write. Returns False when `old` is no longer present.
        """

    @abc.abstractmethod
    async def rename(self, key: str, new_key: str) -> bool:
        """Move a collection to a new key. Returns False if `key` was empty."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Drop a collection."""

    async def count(self, key: str) -> int:
        return len(await self.items(key))


class MemoryLocalStore(LocalStore):
    """In-process store. Not durable across restarts."""

    def __init__(self) -> None:
        self._data: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    async def push(self, key: str, item: str, max_len: int | None = None) -> None:
        async with self._lock:
            bucket = self._data.setdefault(key, [])
            bucket.insert(0, item)
            if max_len is not None and len(bucket) > max_len:
                del bucket[max_len:]

    async def items(self, key: str) -> list[str]:
        async with self._lock:
            return list(self._data.get(key, []))

    async def remove(self, key: str, item: str) -> int:
        async with self._lock:
            bucket = self._data.get(key, [])
            if item in bucket:
                bucket.remove(item)
                return 1
            return 0

    async def replace_item(self, key: str, old: str, new: str) -> bool:
        async with self._lock:
            bucket = self._data.get(key, [])
            if old not in bucket:
                return False
            bucket[bucket.index(old)] = new
            return True

    async def rename(self, key: str, new_key: str) -> bool:
        async with self._lock:
            bucket = self._data.pop(key, None)
            if not bucket:
                return False
            self._data[new_key] = bucket
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def count(self, key: str) -> int:
        async with self._lock:
            return len(self._data.get(key, []))


class RedisLocalStore(LocalStore):
    """Redis list-backed store (decode_responses=True client expected)."""

    def __init__(self, redis: object) -> None:
        self._redis = redis

    async def push(self, key: str, item: str, max_len: int | None = None) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lpush(key, item)
            if max_len is not None:
                pipe.ltrim(key, 0, max_len - 1)
            await pipe.execute()

    async def items(self, key: str) -> list[str]:
        return list(await self._redis.lrange(key, 0, -1))

    async def remove(self, key: str, item: str) -> int:
        return int(await self._redis.lrem(key, 1, item))

    async def replace_item(self, key: str, old: str, new: str) -> bool:
        # WATCH aborts the MULTI if another client touches the list in between
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.lrange(key, 0, -1)
                    if old not in current:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.lset(key, current.index(old), new)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug("List %s changed during replace — retrying", key)
                    continue

    async def rename(self, key: str, new_key: str) -> bool:
        if not await self._redis.exists(key):
            return False
        await self._redis.rename(key, new_key)
        return True

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def count(self, key: str) -> int:
        return int(await self._redis.llen(key))
