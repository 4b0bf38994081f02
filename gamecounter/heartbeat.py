"""Per-house last-seen tracking."""

from __future__ import annotations

import threading

from gamecounter.models import HOUSE_IDS

LIVENESS_WINDOW_MS = 10_000


class HeartbeatTracker:
    def __init__(self, *, window_ms: int = LIVENESS_WINDOW_MS) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self._window_ms = int(window_ms)
        self._last_seen: dict[str, int] = {}
        self._lock = threading.Lock()

    def record(self, house_id: str, now_ms: int) -> None:
        with self._lock:
            self._last_seen[house_id] = int(now_ms)

    def last_seen(self, house_id: str) -> int | None:
        with self._lock:
            return self._last_seen.get(house_id)

    def is_online(self, house_id: str, now_ms: int) -> bool:
        seen = self.last_seen(house_id)
        if seen is None:
            return False
        return (now_ms - seen) < self._window_ms

    def snapshot(self, now_ms: int) -> dict[str, bool]:
        return {house_id: self.is_online(house_id, now_ms) for house_id in HOUSE_IDS}
