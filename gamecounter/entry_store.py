"""Game entry reconciliation and the client-side write-through cache."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Sequence

from gamecounter.local_cache import ENTRIES_KEY, PRICES_KEY, PURGE_MARK_KEY, LocalCache
from gamecounter.models import (
    GameEntry,
    PayloadError,
    TVConfig,
    entries_to_payload,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checkers
    from gamecounter.sync_client import RemoteApi

log = logging.getLogger("gamecounter.store")


def merge_entries(local: Iterable[GameEntry], remote: Iterable[GameEntry]) -> list[GameEntry]:
    """Union keyed by id; the local copy wins on collision; oldest first.

    Ties on timestamp are broken by id so merging is deterministic and
    ``merge_entries(merge_entries(L, R), R) == merge_entries(L, R)``.
    """

    merged: dict[str, GameEntry] = {entry.id: entry for entry in remote}
    for entry in local:
        merged[entry.id] = entry
    return sorted(merged.values(), key=lambda entry: (entry.timestamp, entry.id))


def needs_push(merged: Sequence[GameEntry], remote: Sequence[GameEntry]) -> bool:
    """Return True when the merge added entries the remote does not know about.

    Only growth triggers a push back. A local copy that merely differs from the
    remote copy of the same id is not re-sent; the next bulk commit from the
    worker carries it.
    """

    remote_ids = {entry.id for entry in remote}
    return len(merged) > len(remote_ids)


def floor_price(value: float, base_price: float) -> float:
    return base_price if value < base_price else value


def apply_price_override(
    prices: Mapping[str, float],
    tv_id: str,
    value: Any,
    tvs: Mapping[str, TVConfig],
) -> dict[str, float]:
    """Return a copy of ``prices`` with ``tv_id`` set, never below base price."""

    tv = tvs.get(tv_id)
    if tv is None:
        raise PayloadError(f"unknown TV {tv_id!r}")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadError(f"price for {tv_id} must be a number")
    updated = dict(prices)
    updated[tv_id] = floor_price(value, tv.base_price)
    return updated


def normalize_prices(raw: Any, tvs: Mapping[str, TVConfig]) -> dict[str, float]:
    if not isinstance(raw, Mapping):
        raise PayloadError("prices must be an object")
    prices: dict[str, float] = {}
    for tv_id, value in raw.items():
        prices = apply_price_override(prices, tv_id, value, tvs)
    return prices


def effective_price(tv: TVConfig, prices: Mapping[str, float]) -> float:
    return prices.get(tv.id, tv.base_price)


class EntryStore:
    """Local cache first, server second.

    Reads try the server with a bounded timeout and fall back to the cache.
    Writes land in the cache immediately and are pushed in the background;
    a failed push only gets logged.
    """

    def __init__(
        self,
        cache: LocalCache,
        remote: "RemoteApi",
        tvs: Sequence[TVConfig],
    ) -> None:
        self._cache = cache
        self._remote = remote
        self._tvs = {tv.id: tv for tv in tvs}
        self._pending: set[asyncio.Task] = set()

    def cached_entries(self) -> list[GameEntry]:
        raw = self._cache.get(ENTRIES_KEY, [])
        entries: list[GameEntry] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                entries.append(GameEntry.from_payload(item))
            except PayloadError as exc:
                log.debug("Skipping malformed cached entry: %s", exc)
        return entries

    def _write_entries(self, entries: Sequence[GameEntry]) -> None:
        self._cache.set(ENTRIES_KEY, entries_to_payload(entries))

    async def fetch_entries(self) -> list[GameEntry]:
        local = self.cached_entries()
        games = await self._remote.get_games()
        if games is None:
            return local
        remote, purged_at = games
        if purged_at is not None and purged_at != self._cache.get(PURGE_MARK_KEY):
            local = self._drop_purged(local, purged_at)
        merged = merge_entries(local, remote)
        self._write_entries(merged)
        if needs_push(merged, remote):
            log.info(
                "Local cache holds %d entries the server lacks; pushing merged set",
                len(merged) - len(remote),
            )
            await self._remote.put_entries(merged)
        return merged

    def _drop_purged(self, entries: Sequence[GameEntry], purged_at: int) -> list[GameEntry]:
        """Forget cached entries logged at or before a server-side purge."""

        kept = [entry for entry in entries if entry.timestamp > purged_at]
        if len(kept) != len(entries):
            log.warning(
                "Server was purged; dropping %d cached entries", len(entries) - len(kept)
            )
        self._cache.set(PURGE_MARK_KEY, purged_at)
        return kept

    def _spawn(self, coro) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def commit_entries(self, entries: Sequence[GameEntry]) -> asyncio.Task | None:
        """Persist locally now; return the background push task, if any."""

        entries = list(entries)
        self._write_entries(entries)
        return self._spawn(self._push_entries(entries))

    async def _push_entries(self, entries: Sequence[GameEntry]) -> bool:
        ok = await self._remote.put_entries(entries)
        if not ok:
            log.warning("Entry push failed; %d entries kept in local cache", len(entries))
        return ok

    async def flush(self) -> None:
        """Wait for outstanding background pushes."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def add_game(self, tv_id: str, *, timestamp: int | None = None) -> GameEntry:
        tv = self._tvs.get(tv_id)
        if tv is None:
            raise PayloadError(f"unknown TV {tv_id!r}")
        price = effective_price(tv, self.cached_prices())
        entry = GameEntry.create(tv_id, price, timestamp=timestamp)
        self.commit_entries(self.cached_entries() + [entry])
        return entry

    def add_separator(self, tv_id: str, *, timestamp: int | None = None) -> GameEntry:
        if tv_id not in self._tvs:
            raise PayloadError(f"unknown TV {tv_id!r}")
        entry = GameEntry.create(tv_id, 0, timestamp=timestamp, separator=True)
        self.commit_entries(self.cached_entries() + [entry])
        return entry

    async def purge_all(self) -> bool:
        """Irreversibly clear the local cache and ask the server to do the same."""

        self._cache.remove(ENTRIES_KEY)
        ok = await self._remote.delete_entries()
        if not ok:
            log.warning("Remote purge failed; local cache cleared anyway")
        return ok

    def cached_prices(self) -> dict[str, float]:
        raw = self._cache.get(PRICES_KEY, {})
        try:
            return normalize_prices(raw, self._tvs)
        except PayloadError as exc:
            log.debug("Ignoring malformed cached prices: %s", exc)
            return {}

    async def fetch_prices(self) -> dict[str, float]:
        remote = await self._remote.get_prices()
        if remote is None:
            return self.cached_prices()
        self._cache.set(PRICES_KEY, remote)
        return dict(remote)

    def set_price(self, tv_id: str, value: float) -> dict[str, float]:
        prices = apply_price_override(self.cached_prices(), tv_id, value, self._tvs)
        self._cache.set(PRICES_KEY, prices)
        self._spawn(self._push_prices(prices))
        return prices

    async def _push_prices(self, prices: Mapping[str, float]) -> bool:
        ok = await self._remote.put_prices(prices)
        if not ok:
            log.warning("Price push failed; override kept in local cache")
        return ok
