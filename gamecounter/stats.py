"""Revenue and usage aggregation over game entries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Sequence

from gamecounter.models import HOUSE_IDS, GameEntry, TVConfig

HOUR_MS = 3_600_000
WEEK_MS = 7 * 24 * HOUR_MS
PERIODS = ("today", "week", "month", "all")


@dataclass(slots=True, frozen=True)
class HouseStats:
    house_id: str
    total_games: int
    total_revenue: float


@dataclass(slots=True, frozen=True)
class GlobalStats:
    total_games: int
    total_revenue: float
    houses: tuple[HouseStats, ...]


def revenue(entries: Iterable[GameEntry]) -> float:
    """Sum of amounts, separators excluded."""
    return sum(entry.amount for entry in entries if not entry.is_separator)


def game_count(entries: Iterable[GameEntry]) -> int:
    return sum(1 for entry in entries if not entry.is_separator)


def business_day_start(now_ms: int, start_hour: int = 7) -> int:
    """Epoch ms of the most recent local ``start_hour`` o'clock."""

    now = datetime.fromtimestamp(now_ms / 1000)
    start = now.replace(hour=start_hour, minute=0, second=0, microsecond=0)
    if now.hour < start_hour:
        start -= timedelta(days=1)
    return int(start.timestamp() * 1000)


def period_start(period: str, now_ms: int, *, start_hour: int = 7) -> int:
    if period == "today":
        return business_day_start(now_ms, start_hour)
    if period == "week":
        return now_ms - WEEK_MS
    if period == "month":
        now = datetime.fromtimestamp(now_ms / 1000)
        first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return int(first.timestamp() * 1000)
    if period == "all":
        return 0
    raise ValueError(f"unknown period {period!r}")


def entries_since(entries: Iterable[GameEntry], since_ms: int) -> list[GameEntry]:
    return [entry for entry in entries if entry.completed and entry.timestamp >= since_ms]


def entries_for_house(
    entries: Iterable[GameEntry], house_id: str, tv_houses: Mapping[str, str]
) -> list[GameEntry]:
    return [entry for entry in entries if tv_houses.get(entry.tv_id) == house_id]


def house_stats(
    entries: Sequence[GameEntry], tv_houses: Mapping[str, str]
) -> dict[str, HouseStats]:
    result: dict[str, HouseStats] = {}
    for house_id in HOUSE_IDS:
        house_entries = entries_for_house(entries, house_id, tv_houses)
        result[house_id] = HouseStats(
            house_id=house_id,
            total_games=game_count(house_entries),
            total_revenue=revenue(house_entries),
        )
    return result


def global_stats(entries: Sequence[GameEntry], tv_houses: Mapping[str, str]) -> GlobalStats:
    houses = house_stats(entries, tv_houses)
    return GlobalStats(
        total_games=sum(item.total_games for item in houses.values()),
        total_revenue=sum(item.total_revenue for item in houses.values()),
        houses=tuple(houses[house_id] for house_id in HOUSE_IDS),
    )


def period_stats(
    entries: Sequence[GameEntry],
    tvs: Sequence[TVConfig],
    period: str,
    now_ms: int,
    *,
    start_hour: int = 7,
) -> GlobalStats:
    since = period_start(period, now_ms, start_hour=start_hour)
    tv_houses = {tv.id: tv.house_id for tv in tvs}
    return global_stats(entries_since(entries, since), tv_houses)


def tv_performance(
    entries: Sequence[GameEntry], tvs: Sequence[TVConfig]
) -> list[dict[str, object]]:
    """Per-TV revenue rows in catalogue order, for the performance chart."""

    totals: dict[str, float] = {tv.id: 0 for tv in tvs}
    for entry in entries:
        if entry.is_separator or entry.tv_id not in totals:
            continue
        totals[entry.tv_id] += entry.amount
    return [{"tvId": tv.id, "name": tv.name, "revenue": totals[tv.id]} for tv in tvs]


def hourly_counts(
    entries: Iterable[GameEntry], now_ms: int, tv_houses: Mapping[str, str]
) -> dict[str, int]:
    """Non-separator games per house in the sliding hour ending at ``now_ms``."""

    window_start = now_ms - HOUR_MS
    counts = {house_id: 0 for house_id in HOUSE_IDS}
    for entry in entries:
        if entry.is_separator or entry.timestamp < window_start:
            continue
        house_id = tv_houses.get(entry.tv_id)
        if house_id in counts:
            counts[house_id] += 1
    return counts


def tv_counters(entries: Iterable[GameEntry], tv_id: str) -> list[int | None]:
    """Running per-TV counter labels; ``None`` marks a separator that resets it."""

    labels: list[int | None] = []
    counter = 0
    for entry in entries:
        if entry.tv_id != tv_id:
            continue
        if entry.is_separator:
            counter = 0
            labels.append(None)
            continue
        counter += 1
        labels.append(counter)
    return labels
