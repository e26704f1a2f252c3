import asyncio

import pytest

from tool_stream.store import KeyValueStore, MemoryStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self):
        assert await MemoryStore().get("nope") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        store = MemoryStore()
        await store.set("k", {"a": 1})
        assert await store.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        store = MemoryStore()
        value = {"tools": []}
        await store.set("k", value)
        value["tools"].append(1)
        fetched = await store.get("k")
        fetched["tools"].append(2)
        assert await store.get("k") == {"tools": []}

    @pytest.mark.asyncio
    async def test_ttl_expires(self):
        clock = FakeClock()
        store = MemoryStore(clock=clock)
        await store.set("k", 1, ttl=10)
        clock.now += 9
        assert await store.get("k") == 1
        clock.now += 2
        assert await store.get("k") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_add_only_when_absent(self):
        store = MemoryStore()
        assert await store.add("slot:0", "a")
        assert not await store.add("slot:0", "b")
        assert await store.get("slot:0") == "a"

    @pytest.mark.asyncio
    async def test_add_after_expiry(self):
        clock = FakeClock()
        store = MemoryStore(clock=clock)
        await store.add("slot:0", "a", ttl=5)
        clock.now += 6
        assert await store.add("slot:0", "b")

    @pytest.mark.asyncio
    async def test_increment_starts_at_initial(self):
        store = MemoryStore()
        assert await store.increment("c") == 1
        assert await store.increment("c") == 2
        assert await store.increment("other", initial=10) == 11
        assert await store.get("c") == 2

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_distinct(self):
        store = MemoryStore()
        values = await asyncio.gather(*(store.increment("c") for _ in range(50)))
        assert sorted(values) == list(range(1, 51))

    @pytest.mark.asyncio
    async def test_expire_refreshes_existing_keys(self):
        clock = FakeClock()
        store = MemoryStore(clock=clock)
        await store.increment("counter", ttl=10)
        await store.add("slot:0", 1.0, ttl=10)

        clock.now += 8
        assert await store.expire(["counter", "slot:0", "missing"], 10) == 2

        clock.now += 8
        assert await store.get("counter") == 1
        assert not await store.add("slot:0", 2.0)
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_delete_counts_existing(self):
        store = MemoryStore()
        await store.set("a", 1)
        await store.set("b", 2)
        assert await store.delete("a", "b", "c") == 2
        assert await store.get("a") is None


class TestKeyValueStoreBase:
    @pytest.mark.asyncio
    async def test_methods_raise_not_implemented(self):
        store = KeyValueStore()
        with pytest.raises(NotImplementedError):
            await store.get("k")
        with pytest.raises(NotImplementedError):
            await store.increment("k")
        with pytest.raises(NotImplementedError):
            await store.expire(["k"], 10)
