"""Bounded append-only log of session lifecycle events."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections import deque
from typing import Deque

from gamecounter.models import SessionEvent

log = logging.getLogger("gamecounter.server")


class SessionEventLog:
    """Keeps the most recent ``history_limit`` events in insertion order."""

    def __init__(self, *, history_limit: int = 100) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._history: Deque[SessionEvent] = deque(maxlen=history_limit)
        self._seq = 0
        self._lock = threading.Lock()

    def append(self, event: SessionEvent) -> SessionEvent:
        with self._lock:
            self._seq += 1
            stored = dataclasses.replace(event, id=str(self._seq))
            self._history.append(stored)
        log.info("event %s %s house=%s", stored.id, stored.type, stored.house_id)
        return stored

    def extend(self, events: list[SessionEvent]) -> list[SessionEvent]:
        return [self.append(event) for event in events]

    def recent(self, limit: int | None = None) -> list[SessionEvent]:
        with self._lock:
            history = list(self._history)
        if limit is not None and limit >= 0:
            return history[-limit:] if limit else []
        return history
