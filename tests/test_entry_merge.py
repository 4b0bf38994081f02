import asyncio

import pytest

from gamecounter.entry_store import (
    EntryStore,
    apply_price_override,
    merge_entries,
    needs_push,
    normalize_prices,
)
from gamecounter.local_cache import ENTRIES_KEY, PRICES_KEY, PURGE_MARK_KEY, LocalCache
from gamecounter.models import GameEntry, PayloadError, TVConfig


TVS = [
    TVConfig(id="A1", name="TV A1", house_id="house1", base_price=20),
    TVConfig(id="C1", name="TV C1", house_id="house1", base_price=15),
    TVConfig(id="A2", name="TV A2", house_id="house2", base_price=20),
]


def _entry(entry_id: str, timestamp: int, tv_id: str = "A1", amount: float = 20) -> GameEntry:
    return GameEntry(id=entry_id, tv_id=tv_id, timestamp=timestamp, completed=True, amount=amount)


class FakeRemote:
    def __init__(self, entries=None, *, online=True):
        self.entries = list(entries or [])
        self.prices = {}
        self.online = online
        self.puts = []
        self.purged_at = None

    async def get_games(self):
        return (list(self.entries), self.purged_at) if self.online else None

    async def put_entries(self, entries):
        if not self.online:
            return False
        self.puts.append(list(entries))
        self.entries = list(entries)
        return True

    async def delete_entries(self):
        if not self.online:
            return False
        self.entries = []
        self.purged_at = 1000
        return True

    async def get_prices(self):
        return dict(self.prices) if self.online else None

    async def put_prices(self, prices):
        if not self.online:
            return False
        self.prices = dict(prices)
        return True


def test_merge_is_union_with_local_winning():
    remote = [_entry("a", 100), _entry("b", 200, amount=20)]
    local = [_entry("b", 200, amount=25), _entry("c", 150)]

    merged = merge_entries(local, remote)

    assert [entry.id for entry in merged] == ["a", "c", "b"]
    assert next(entry for entry in merged if entry.id == "b").amount == 25


def test_merge_is_idempotent_and_ordered():
    local = [_entry("x", 300), _entry("y", 100)]
    remote = [_entry("z", 200), _entry("w", 100)]

    once = merge_entries(local, remote)
    twice = merge_entries(once, remote)

    assert once == twice
    assert [entry.timestamp for entry in once] == sorted(entry.timestamp for entry in once)
    # equal timestamps fall back to id order
    assert [entry.id for entry in once[:2]] == ["w", "y"]


def test_merge_with_empty_sides():
    local = [_entry("a", 1)]
    assert merge_entries(local, []) == local
    assert merge_entries([], local) == local
    assert merge_entries([], []) == []


def test_needs_push_only_on_growth():
    remote = [_entry("a", 1)]
    assert needs_push(merge_entries([_entry("b", 2)], remote), remote)
    assert not needs_push(merge_entries([_entry("a", 1, amount=99)], remote), remote)


def test_price_override_is_floored_to_base_price():
    tvs = {tv.id: tv for tv in TVS}
    prices = apply_price_override({}, "A1", 10, tvs)
    prices = apply_price_override(prices, "C1", 30, tvs)
    assert prices == {"A1": 20, "C1": 30}

    with pytest.raises(PayloadError):
        apply_price_override(prices, "Z9", 30, tvs)
    with pytest.raises(PayloadError):
        apply_price_override(prices, "A1", "cheap", tvs)
    with pytest.raises(PayloadError):
        normalize_prices(["A1"], tvs)


def test_fetch_entries_pushes_back_entries_the_server_lacks(tmp_path):
    async def runner():
        cache = LocalCache(tmp_path / "cache.json")
        cache.set(ENTRIES_KEY, [_entry("local", 500).to_payload()])
        remote = FakeRemote([_entry("remote", 400)])
        store = EntryStore(cache, remote, TVS)

        merged = await store.fetch_entries()

        assert [entry.id for entry in merged] == ["remote", "local"]
        assert [entry.id for entry in remote.entries] == ["remote", "local"]
        assert len(remote.puts) == 1

        # second fetch finds nothing new to push
        await store.fetch_entries()
        assert len(remote.puts) == 1

    asyncio.run(runner())


def test_fetch_entries_falls_back_to_cache_when_offline(tmp_path):
    async def runner():
        cache = LocalCache(tmp_path / "cache.json")
        cache.set(ENTRIES_KEY, [_entry("local", 500).to_payload()])
        store = EntryStore(cache, FakeRemote(online=False), TVS)

        entries = await store.fetch_entries()

        assert [entry.id for entry in entries] == ["local"]

    asyncio.run(runner())


def test_add_game_uses_effective_price_and_pushes_in_background(tmp_path):
    async def runner():
        cache = LocalCache(tmp_path / "cache.json")
        remote = FakeRemote()
        store = EntryStore(cache, remote, TVS)

        store.set_price("C1", 18)
        first = store.add_game("C1", timestamp=1000)
        sep = store.add_separator("C1", timestamp=2000)
        await store.flush()

        assert first.amount == 18
        assert sep.is_separator and sep.amount == 0
        assert [entry.id for entry in store.cached_entries()] == [first.id, sep.id]
        assert [entry.id for entry in remote.entries] == [first.id, sep.id]
        assert remote.prices == {"C1": 18}
        assert store.cached_prices() == {"C1": 18}

        with pytest.raises(PayloadError):
            store.add_game("Z9")

    asyncio.run(runner())


def test_failed_push_keeps_entries_locally(tmp_path):
    async def runner():
        cache = LocalCache(tmp_path / "cache.json")
        store = EntryStore(cache, FakeRemote(online=False), TVS)

        entry = store.add_game("A1", timestamp=1000)
        await store.flush()

        reloaded = LocalCache(tmp_path / "cache.json")
        assert reloaded.get(ENTRIES_KEY) == [entry.to_payload()]

    asyncio.run(runner())


def test_purge_clears_cache_and_server(tmp_path):
    async def runner():
        cache = LocalCache(tmp_path / "cache.json")
        remote = FakeRemote([_entry("a", 1)])
        cache.set(ENTRIES_KEY, [_entry("a", 1).to_payload()])
        cache.set(PRICES_KEY, {"A1": 25})
        store = EntryStore(cache, remote, TVS)

        assert await store.purge_all() is True
        assert store.cached_entries() == []
        assert remote.entries == []
        assert store.cached_prices() == {"A1": 25}

    asyncio.run(runner())


def test_fetch_entries_forgets_entries_purged_on_the_server(tmp_path):
    async def runner():
        cache = LocalCache(tmp_path / "cache.json")
        cache.set(ENTRIES_KEY, [_entry("old", 500).to_payload(), _entry("new", 1500).to_payload()])
        remote = FakeRemote()
        remote.purged_at = 1000
        store = EntryStore(cache, remote, TVS)

        merged = await store.fetch_entries()

        assert [entry.id for entry in merged] == ["new"]
        assert [entry.id for entry in remote.entries] == ["new"]
        assert cache.get(PURGE_MARK_KEY) == 1000

        # an entry backdated before an already-seen purge is no longer dropped
        cache.set(ENTRIES_KEY, [_entry("late", 900).to_payload(), _entry("new", 1500).to_payload()])
        merged = await store.fetch_entries()
        assert [entry.id for entry in merged] == ["late", "new"]

    asyncio.run(runner())
