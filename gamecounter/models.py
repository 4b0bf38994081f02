"""Shared data types and their JSON payload codecs."""

from __future__ import annotations

import dataclasses
import secrets
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

HOUSE_IDS = ("house1", "house2")
SESSION_STATUSES = ("idle", "requested", "active")
AUDIO_STATUSES = ("idle", "active")
VIDEO_QUALITIES = ("low", "medium", "high")
EVENT_TYPES = ("video_request", "yield_alert", "counter_online", "video_session_ended")

# Response header on GET /api/games carrying the last purge time (epoch ms).
PURGED_AT_HEADER = "X-Purged-At"

_ENTRY_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


class PayloadError(ValueError):
    """Raised when a request or cached payload does not match its schema."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_entry_id(length: int = 9) -> str:
    return "".join(secrets.choice(_ENTRY_ID_ALPHABET) for _ in range(length))


def _require_mapping(raw: Any, label: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise PayloadError(f"{label} must be an object")
    return raw


def _int_field(raw: Mapping[str, Any], key: str, *, required: bool = True) -> int | None:
    value = raw.get(key)
    if value is None:
        if required:
            raise PayloadError(f"{key} is required")
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadError(f"{key} must be a number")
    return int(value)


def _house_field(raw: Mapping[str, Any], key: str, *, required: bool = True) -> str | None:
    value = raw.get(key)
    if value is None:
        if required:
            raise PayloadError(f"{key} is required")
        return None
    if value not in HOUSE_IDS:
        raise PayloadError(f"{key} must be one of {', '.join(HOUSE_IDS)}")
    return str(value)


@dataclass(slots=True, frozen=True)
class TVConfig:
    id: str
    name: str
    house_id: str
    base_price: float

    @classmethod
    def from_cfg(cls, raw: Mapping[str, Any]) -> "TVConfig":
        house = raw.get("house") or raw.get("house_id")
        if house not in HOUSE_IDS:
            raise ValueError(f"TV {raw.get('id')!r} has unknown house {house!r}")
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name") or raw["id"]),
            house_id=str(house),
            base_price=float(raw.get("base_price", 0)),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "houseId": self.house_id,
            "pricePerGame": self.base_price,
        }


def tv_configs_from_cfg(cfg: Mapping[str, Any]) -> list[TVConfig]:
    return [TVConfig.from_cfg(item) for item in cfg.get("tvs", [])]


def tv_house_map(tvs: Iterable[TVConfig]) -> dict[str, str]:
    return {tv.id: tv.house_id for tv in tvs}


@dataclass(slots=True, frozen=True)
class GameEntry:
    """One logged game, or a zero-amount separator marker."""

    id: str
    tv_id: str
    timestamp: int
    completed: bool
    amount: float
    is_separator: bool = False

    @classmethod
    def create(
        cls,
        tv_id: str,
        amount: float,
        *,
        timestamp: int | None = None,
        separator: bool = False,
    ) -> "GameEntry":
        return cls(
            id=new_entry_id(),
            tv_id=tv_id,
            timestamp=now_ms() if timestamp is None else int(timestamp),
            completed=True,
            amount=0 if separator else amount,
            is_separator=separator,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "tvId": self.tv_id,
            "timestamp": self.timestamp,
            "completed": self.completed,
            "amount": self.amount,
        }
        if self.is_separator:
            payload["isSeparator"] = True
        return payload

    @classmethod
    def from_payload(cls, raw: Any) -> "GameEntry":
        data = _require_mapping(raw, "game entry")
        entry_id = data.get("id")
        tv_id = data.get("tvId")
        if not isinstance(entry_id, str) or not entry_id:
            raise PayloadError("id must be a non-empty string")
        if not isinstance(tv_id, str) or not tv_id:
            raise PayloadError("tvId must be a non-empty string")
        amount = data.get("amount", 0)
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise PayloadError("amount must be a number")
        return cls(
            id=entry_id,
            tv_id=tv_id,
            timestamp=_int_field(data, "timestamp"),
            completed=bool(data.get("completed", True)),
            amount=amount,
            is_separator=bool(data.get("isSeparator", False)),
        )


def entries_from_payload(raw: Any) -> list[GameEntry]:
    if not isinstance(raw, list):
        raise PayloadError("games must be a list")
    return [GameEntry.from_payload(item) for item in raw]


def entries_to_payload(entries: Iterable[GameEntry]) -> list[dict[str, Any]]:
    return [entry.to_payload() for entry in entries]


@dataclass(slots=True, frozen=True)
class HouseThresholds:
    house1: int = 2
    house2: int = 2

    def get(self, house_id: str) -> int:
        return getattr(self, house_id)

    def merged(self, patch: Mapping[str, Any]) -> "HouseThresholds":
        updates: dict[str, int] = {}
        for key, value in _require_mapping(patch, "thresholds").items():
            if key not in HOUSE_IDS:
                raise PayloadError(f"unknown house {key!r}")
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise PayloadError(f"{key} threshold must be a non-negative integer")
            if isinstance(value, float) and not value.is_integer():
                raise PayloadError(f"{key} threshold must be a whole number of games")
            updates[key] = int(value)
        return dataclasses.replace(self, **updates)

    def to_payload(self) -> dict[str, int]:
        return {"house1": self.house1, "house2": self.house2}

    @classmethod
    def from_payload(cls, raw: Any) -> "HouseThresholds":
        return cls().merged(raw)


@dataclass(slots=True, frozen=True)
class VideoSession:
    """The global live-monitoring slot. ``house_id`` is the lock owner."""

    house_id: str | None = None
    status: str = "idle"
    frame: str | None = None
    quality: str = "medium"
    audio_status: str = "idle"
    last_request_time: int | None = None
    last_requested_house_id: str | None = None
    last_online_signal_time: int | None = None
    last_online_signal_house_id: str | None = None

    def to_payload(self, *, include_frame: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "houseId": self.house_id,
            "status": self.status,
            "quality": self.quality,
            "audioStatus": self.audio_status,
        }
        if include_frame and self.frame:
            payload["frame"] = self.frame
        optional = {
            "lastRequestTime": self.last_request_time,
            "lastRequestedHouseId": self.last_requested_house_id,
            "lastOnlineSignalTime": self.last_online_signal_time,
            "lastOnlineSignalHouseId": self.last_online_signal_house_id,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_payload(cls, raw: Any) -> "VideoSession":
        data = _require_mapping(raw, "video session")
        status = data.get("status", "idle")
        if status not in SESSION_STATUSES:
            raise PayloadError(f"status must be one of {', '.join(SESSION_STATUSES)}")
        quality = data.get("quality") or "medium"
        if quality not in VIDEO_QUALITIES:
            raise PayloadError(f"quality must be one of {', '.join(VIDEO_QUALITIES)}")
        audio_status = data.get("audioStatus") or "idle"
        if audio_status not in AUDIO_STATUSES:
            raise PayloadError(f"audioStatus must be one of {', '.join(AUDIO_STATUSES)}")
        frame = data.get("frame")
        return cls(
            house_id=_house_field(data, "houseId", required=False),
            status=status,
            frame=frame if isinstance(frame, str) and frame else None,
            quality=quality,
            audio_status=audio_status,
            last_request_time=_int_field(data, "lastRequestTime", required=False),
            last_requested_house_id=_house_field(data, "lastRequestedHouseId", required=False),
            last_online_signal_time=_int_field(data, "lastOnlineSignalTime", required=False),
            last_online_signal_house_id=_house_field(
                data, "lastOnlineSignalHouseId", required=False
            ),
        )


@dataclass(slots=True, frozen=True)
class SessionEvent:
    id: str | None
    type: str
    house_id: str
    timestamp: int
    duration: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "houseId": self.house_id,
            "timestamp": self.timestamp,
        }
        if self.duration is not None:
            payload["duration"] = self.duration
        return payload

    @classmethod
    def from_payload(cls, raw: Any, *, now: int | None = None) -> "SessionEvent":
        data = _require_mapping(raw, "event")
        event_type = data.get("type")
        if event_type not in EVENT_TYPES:
            raise PayloadError(f"type must be one of {', '.join(EVENT_TYPES)}")
        timestamp = _int_field(data, "timestamp", required=False)
        duration = _int_field(data, "duration", required=False)
        if duration is not None and event_type != "video_session_ended":
            raise PayloadError("duration is only valid for video_session_ended")
        event_id = data.get("id")
        return cls(
            id=str(event_id) if event_id is not None else None,
            type=event_type,
            house_id=_house_field(data, "houseId"),
            timestamp=timestamp if timestamp is not None else (now if now is not None else now_ms()),
            duration=duration,
        )
