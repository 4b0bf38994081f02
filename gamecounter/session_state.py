"""Live-monitoring session state machine.

The session is a single global slot. ``VideoSession.house_id`` names the house
holding it; video (``status``) and audio (``audio_status``) are independent
flags that share that lock.

Video rounds move ``idle -> requested -> active -> idle``. A new request is
accepted from any state. ``transition`` is a pure function returning the next
state plus the events the edge produced; ``SessionCoordinator`` owns the
server-side instance together with the latest frame and audio chunk.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping

from gamecounter.event_log import SessionEventLog
from gamecounter.models import (
    AUDIO_STATUSES,
    HOUSE_IDS,
    SESSION_STATUSES,
    VIDEO_QUALITIES,
    PayloadError,
    SessionEvent,
    VideoSession,
)

log = logging.getLogger("gamecounter.server")

_PATCH_FIELDS = {
    "houseId": "house_id",
    "status": "status",
    "quality": "quality",
    "audioStatus": "audio_status",
    "frame": "frame",
    "lastOnlineSignalTime": "last_online_signal_time",
    "lastOnlineSignalHouseId": "last_online_signal_house_id",
}


class TransitionError(ValueError):
    """Raised for a patch that is well-formed but not a legal edge."""


@dataclass(slots=True, frozen=True)
class SessionState:
    session: VideoSession = field(default_factory=VideoSession)
    # Set when video enters ``active``; never exposed to clients.
    started_at: int | None = None


def parse_patch(raw: Any) -> dict[str, Any]:
    """Validate a partial session update and return it with snake_case keys."""

    if not isinstance(raw, Mapping):
        raise PayloadError("video session update must be an object")
    errors: list[str] = []
    patch: dict[str, Any] = {}
    for key, value in raw.items():
        attr = _PATCH_FIELDS.get(key)
        if attr is None:
            errors.append(f"unknown field {key!r}")
            continue
        if key in {"houseId", "lastOnlineSignalHouseId"}:
            if value is not None and value not in HOUSE_IDS:
                errors.append(f"{key} must be one of {', '.join(HOUSE_IDS)} or null")
                continue
        elif key == "status":
            if value not in SESSION_STATUSES:
                errors.append(f"status must be one of {', '.join(SESSION_STATUSES)}")
                continue
        elif key == "quality":
            if value not in VIDEO_QUALITIES:
                errors.append(f"quality must be one of {', '.join(VIDEO_QUALITIES)}")
                continue
        elif key == "audioStatus":
            if value not in AUDIO_STATUSES:
                errors.append(f"audioStatus must be one of {', '.join(AUDIO_STATUSES)}")
                continue
        elif key == "frame":
            if value is not None:
                errors.append("frame can only be cleared here; use the video-frame endpoint")
                continue
        elif key == "lastOnlineSignalTime":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append("lastOnlineSignalTime must be a number")
                continue
            value = int(value)
        patch[attr] = value
    if errors:
        raise PayloadError(errors[0], errors)
    return patch


def _ended_event(house_id: str, now: int, started_at: int | None) -> SessionEvent:
    duration = max(0, now - started_at) if started_at is not None else 0
    return SessionEvent(
        id=None,
        type="video_session_ended",
        house_id=house_id,
        timestamp=now,
        duration=duration,
    )


def transition(
    state: SessionState, patch: Mapping[str, Any], now: int
) -> tuple[SessionState, list[SessionEvent]]:
    """Apply a validated patch; return the next state and the emitted events."""

    current = state.session
    started_at = state.started_at
    events: list[SessionEvent] = []
    updates: dict[str, Any] = {}

    house_id = patch.get("house_id", current.house_id)

    if "quality" in patch:
        updates["quality"] = patch["quality"]
    if "frame" in patch:
        updates["frame"] = None

    target = patch.get("status")
    if target == "requested":
        if house_id is None:
            raise TransitionError("a video request needs a houseId")
        if current.status == "active":
            # re-request while streaming closes the running round first
            events.append(_ended_event(current.house_id, now, started_at))
            started_at = None
        updates.update(
            status="requested",
            frame=None,
            last_request_time=now,
            last_requested_house_id=house_id,
        )
        events.append(
            SessionEvent(id=None, type="video_request", house_id=house_id, timestamp=now)
        )
    elif target == "active":
        if current.status == "idle":
            raise TransitionError("no pending video request to accept")
        if house_id != current.house_id:
            raise TransitionError(f"video session is held by {current.house_id}")
        if current.status == "requested":
            started_at = now
        updates["status"] = "active"
    elif target == "idle":
        if current.status == "active":
            events.append(_ended_event(current.house_id, now, started_at))
        started_at = None
        updates.update(status="idle", frame=None)
    elif "house_id" in patch and house_id != current.house_id and current.status != "idle":
        # only a new request may move the lock while video holds it
        raise TransitionError(f"video session is held by {current.house_id}")

    audio_status = patch.get("audio_status", current.audio_status)
    if audio_status == "active" and house_id is None:
        raise TransitionError("enabling audio needs a houseId")
    updates["audio_status"] = audio_status

    if "last_online_signal_time" in patch:
        signal_time = patch["last_online_signal_time"]
        previous = current.last_online_signal_time
        if previous is None or signal_time > previous:
            signal_house = patch.get("last_online_signal_house_id") or house_id
            if signal_house is None:
                raise TransitionError("an online signal needs a house")
            updates.update(
                last_online_signal_time=signal_time,
                last_online_signal_house_id=signal_house,
            )
            events.append(
                SessionEvent(id=None, type="counter_online", house_id=signal_house, timestamp=now)
            )

    status = updates.get("status", current.status)
    updates["house_id"] = None if status == "idle" and audio_status == "idle" else house_id

    next_session = dataclasses.replace(current, **updates)
    return SessionState(session=next_session, started_at=started_at), events


def is_pending_request(session: VideoSession, house_id: str) -> bool:
    return session.status == "requested" and session.house_id == house_id


def is_missed_request(session: VideoSession, house_id: str, last_ack: int | None) -> bool:
    """True when a request for ``house_id`` went unanswered and is no longer pending."""

    if session.last_requested_house_id != house_id or session.last_request_time is None:
        return False
    if last_ack is not None and session.last_request_time <= last_ack:
        return False
    return not is_pending_request(session, house_id)


class SessionCoordinator:
    """Server-side owner of the session slot, the frame slot and the audio slot."""

    def __init__(self, events: SessionEventLog, *, default_quality: str = "medium") -> None:
        self._events = events
        self._state = SessionState(session=VideoSession(quality=default_quality))
        self._audio_chunk: str | None = None
        self._audio_seq = 0
        self._lock = threading.Lock()

    @property
    def session(self) -> VideoSession:
        with self._lock:
            return self._state.session

    def update(self, raw_patch: Any, now: int) -> VideoSession:
        patch = parse_patch(raw_patch)
        with self._lock:
            previous = self._state.session
            next_state, emitted = transition(self._state, patch, now)
            self._state = next_state
            if next_state.session.audio_status == "idle":
                self._audio_chunk = None
        if previous.status != next_state.session.status:
            log.info(
                "video session %s -> %s (house=%s)",
                previous.status,
                next_state.session.status,
                next_state.session.house_id or previous.house_id,
            )
        self._events.extend(emitted)
        return next_state.session

    def post_frame(self, frame: Any) -> VideoSession:
        if not isinstance(frame, str) or not frame:
            raise PayloadError("frame must be a non-empty string")
        with self._lock:
            session = self._state.session
            if session.status == "idle":
                log.debug("Dropping frame received while session is idle")
                return session
            session = dataclasses.replace(session, frame=frame)
            self._state = dataclasses.replace(self._state, session=session)
            return session

    def post_audio(self, data: Any) -> dict[str, Any]:
        if not isinstance(data, str) or not data:
            raise PayloadError("data must be a non-empty string")
        with self._lock:
            if self._state.session.audio_status == "active":
                self._audio_chunk = data
                self._audio_seq += 1
            else:
                log.debug("Dropping audio chunk received while audio is idle")
        return self.audio_snapshot()

    def audio_snapshot(self) -> dict[str, Any]:
        with self._lock:
            chunks = [self._audio_chunk] if self._audio_chunk else []
            return {"seq": self._audio_seq, "chunks": chunks}
