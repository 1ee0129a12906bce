"""Tests for the local store backends."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import WatchError

from src.audit.store import MemoryLocalStore, RedisLocalStore


class TestMemoryLocalStore:
    @pytest.mark.asyncio
    async def test_push_is_newest_first(self) -> None:
        store = MemoryLocalStore()
        await store.push("k", "a")
        await store.push("k", "b")
        assert await store.items("k") == ["b", "a"]

    @pytest.mark.asyncio
    async def test_ring_keeps_most_recent(self) -> None:
        """After N+k pushes exactly the N most recent remain."""
        store = MemoryLocalStore()
        for i in range(15):
            await store.push("ring", str(i), max_len=10)
        items = await store.items("ring")
        assert len(items) == 10
        assert items == [str(i) for i in range(14, 4, -1)]
        assert await store.count("ring") == 10

    @pytest.mark.asyncio
    async def test_missing_collection_is_empty(self) -> None:
        store = MemoryLocalStore()
        assert await store.items("nope") == []
        assert await store.count("nope") == 0

    @pytest.mark.asyncio
    async def test_remove_one_occurrence(self) -> None:
        store = MemoryLocalStore()
        for item in ("x", "y", "x"):
            await store.push("k", item)
        assert await store.remove("k", "x") == 1
        assert await store.items("k") == ["y", "x"]
        assert await store.remove("k", "zzz") == 0

    @pytest.mark.asyncio
    async def test_replace_item(self) -> None:
        store = MemoryLocalStore()
        await store.push("k", "old")
        await store.push("k", "other")
        assert await store.replace_item("k", "old", "new") is True
        assert await store.items("k") == ["other", "new"]

    @pytest.mark.asyncio
    async def test_replace_item_follows_value_after_push(self) -> None:
        store = MemoryLocalStore()
        await store.push("k", "target")
        await store.push("k", "newer")  # shifts "target" to index 1
        assert await store.replace_item("k", "target", "closed") is True
        assert await store.items("k") == ["newer", "closed"]

    @pytest.mark.asyncio
    async def test_replace_item_missing(self) -> None:
        store = MemoryLocalStore()
        await store.push("k", "a")
        assert await store.replace_item("k", "zzz", "new") is False
        assert await store.replace_item("nope", "a", "new") is False
        assert await store.items("k") == ["a"]

    @pytest.mark.asyncio
    async def test_rename_moves_collection(self) -> None:
        store = MemoryLocalStore()
        await store.push("live", "entry")
        assert await store.rename("live", "archive") is True
        assert await store.items("live") == []
        assert await store.items("archive") == ["entry"]

    @pytest.mark.asyncio
    async def test_rename_empty_collection(self) -> None:
        store = MemoryLocalStore()
        assert await store.rename("live", "archive") is False

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        store = MemoryLocalStore()
        await store.push("k", "a")
        await store.delete("k")
        assert await store.count("k") == 0


def _redis_with_pipeline() -> tuple[MagicMock, MagicMock]:
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    redis = MagicMock()
    redis.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
    redis.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
    return redis, pipe


class TestRedisLocalStore:
    @pytest.mark.asyncio
    async def test_push_trims_in_transaction(self) -> None:
        redis, pipe = _redis_with_pipeline()
        await RedisLocalStore(redis).push("lumi:audit_logs", "{}", max_len=1000)

        redis.pipeline.assert_called_once_with(transaction=True)
        pipe.lpush.assert_called_once_with("lumi:audit_logs", "{}")
        pipe.ltrim.assert_called_once_with("lumi:audit_logs", 0, 999)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_push_without_bound(self) -> None:
        redis, pipe = _redis_with_pipeline()
        await RedisLocalStore(redis).push("lumi:failed_audit_logs", "{}")
        pipe.ltrim.assert_not_called()

    @pytest.mark.asyncio
    async def test_items_and_count(self) -> None:
        redis = MagicMock()
        redis.lrange = AsyncMock(return_value=["b", "a"])
        redis.llen = AsyncMock(return_value=2)
        store = RedisLocalStore(redis)
        assert await store.items("k") == ["b", "a"]
        assert await store.count("k") == 2
        redis.lrange.assert_awaited_once_with("k", 0, -1)

    @pytest.mark.asyncio
    async def test_rename_missing_key(self) -> None:
        redis = MagicMock()
        redis.exists = AsyncMock(return_value=0)
        redis.rename = AsyncMock()
        assert await RedisLocalStore(redis).rename("k", "k2") is False
        redis.rename.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rename_existing_key(self) -> None:
        redis = MagicMock()
        redis.exists = AsyncMock(return_value=1)
        redis.rename = AsyncMock()
        assert await RedisLocalStore(redis).rename("k", "k2") is True
        redis.rename.assert_awaited_once_with("k", "k2")

    @pytest.mark.asyncio
    async def test_replace_item_watches_and_sets_by_current_index(self) -> None:
        redis, pipe = _redis_with_pipeline()
        pipe.watch = AsyncMock()
        pipe.lrange = AsyncMock(return_value=["newer", "old"])
        pipe.execute = AsyncMock(return_value=[True])

        assert await RedisLocalStore(redis).replace_item("alerts", "old", "new") is True
        pipe.watch.assert_awaited_once_with("alerts")
        pipe.multi.assert_called_once()
        pipe.lset.assert_called_once_with("alerts", 1, "new")

    @pytest.mark.asyncio
    async def test_replace_item_retries_on_watch_error(self) -> None:
        redis, pipe = _redis_with_pipeline()
        pipe.watch = AsyncMock()
        pipe.lrange = AsyncMock(side_effect=[["old"], ["newer", "old"]])
        pipe.execute = AsyncMock(side_effect=[WatchError("changed"), [True]])

        assert await RedisLocalStore(redis).replace_item("alerts", "old", "new") is True
        assert pipe.watch.await_count == 2
        assert pipe.lset.call_args_list[-1].args == ("alerts", 1, "new")

    @pytest.mark.asyncio
    async def test_replace_item_missing(self) -> None:
        redis, pipe = _redis_with_pipeline()
        pipe.watch = AsyncMock()
        pipe.unwatch = AsyncMock()
        pipe.lrange = AsyncMock(return_value=["a"])

        assert await RedisLocalStore(redis).replace_item("alerts", "old", "new") is False
        pipe.unwatch.assert_awaited_once()
        pipe.lset.assert_not_called()

    @pytest.mark.asyncio
    async def test_remove(self) -> None:
        redis = MagicMock()
        redis.lrem = AsyncMock(return_value=1)
        assert await RedisLocalStore(redis).remove("k", "x") == 1
        redis.lrem.assert_awaited_once_with("k", 1, "x")
