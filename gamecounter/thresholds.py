"""Edge-triggered low-yield alerts."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

from gamecounter.models import HOUSE_IDS, GameEntry, HouseThresholds, SessionEvent
from gamecounter.stats import hourly_counts

log = logging.getLogger("gamecounter.sync")


class ThresholdEvaluator:
    """Fires one ``yield_alert`` per breach episode and house.

    The armed/flagged state lives only in this instance; a fresh evaluator
    (dashboard reload) starts with every house armed.
    """

    def __init__(self, tv_houses: Mapping[str, str]) -> None:
        self._tv_houses = dict(tv_houses)
        self._flagged: dict[str, bool] = {house_id: False for house_id in HOUSE_IDS}

    def is_flagged(self, house_id: str) -> bool:
        return self._flagged.get(house_id, False)

    def observe(self, house_id: str, count: int, threshold: int, now_ms: int) -> SessionEvent | None:
        if count < threshold:
            if self._flagged.get(house_id):
                return None
            self._flagged[house_id] = True
            log.info(
                "Low yield in %s: %d games in the last hour (threshold %d)",
                house_id,
                count,
                threshold,
            )
            return SessionEvent(id=None, type="yield_alert", house_id=house_id, timestamp=now_ms)
        self._flagged[house_id] = False
        return None

    def evaluate(
        self,
        entries: Iterable[GameEntry],
        now_ms: int,
        thresholds: HouseThresholds,
    ) -> list[SessionEvent]:
        counts = hourly_counts(entries, now_ms, self._tv_houses)
        alerts: list[SessionEvent] = []
        for house_id in HOUSE_IDS:
            event = self.observe(house_id, counts[house_id], thresholds.get(house_id), now_ms)
            if event is not None:
                alerts.append(event)
        return alerts
