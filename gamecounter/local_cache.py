"""Client-side persisted cache keyed by fixed string identifiers."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

ENTRIES_KEY = "fifa_game_counter_data"
PRICES_KEY = "fifa_tv_prices"
LAST_ACK_REQUEST_KEY = "fifa_last_ack_request"
MIC_SYNC_KEY = "fifa_mic_sync"
PURGE_MARK_KEY = "fifa_purged_at"

log = logging.getLogger("gamecounter.store")


class LocalCache:
    """Small JSON document on disk that survives client restarts.

    Every write replaces the whole file through a temporary sibling so a crash
    mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as exc:
            log.warning("Discarding unreadable cache %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def _flush(self) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._data, handle)
            handle.write("\n")
        os.replace(tmp_path, self._path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def remove(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            del self._data[key]
            self._flush()
