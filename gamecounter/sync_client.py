"""Polling clients for the worker (counter) and owner (dashboard) sides."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

import aiohttp

from gamecounter.capture import (
    AudioSource,
    CapturePermissionError,
    FrameSource,
    QualityProfile,
    chunk_peak,
    decode_pcm_chunk,
    encode_pcm_chunk,
    smooth_level,
)
from gamecounter.entry_store import EntryStore
from gamecounter.local_cache import LAST_ACK_REQUEST_KEY, MIC_SYNC_KEY, LocalCache
from gamecounter.models import (
    PURGED_AT_HEADER,
    GameEntry,
    HouseThresholds,
    PayloadError,
    SessionEvent,
    TVConfig,
    VideoSession,
    entries_from_payload,
    entries_to_payload,
    now_ms,
    tv_house_map,
)
from gamecounter.session_state import is_missed_request, is_pending_request
from gamecounter.stats import (
    entries_since,
    hourly_counts,
    period_start,
    period_stats,
    tv_counters,
    tv_performance,
)
from gamecounter.thresholds import ThresholdEvaluator

log = logging.getLogger("gamecounter.sync")

UPDATE_QUEUE_SIZE = 8
# Consecutive empty camera reads before the camera counts as lost.
MAX_EMPTY_FRAMES = 20


def _offer(queue: asyncio.Queue, item: Any) -> None:
    """Put without blocking; a full queue drops its oldest item."""

    try:
        queue.put_nowait(item)
    except asyncio.QueueFull:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            pass


async def _cancel_task(task: asyncio.Task | None) -> None:
    """Cancel and await a capture task; its own failure is logged, not raised."""

    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        log.warning("Capture task %s failed: %s", task.get_name(), exc)


class RemoteApi:
    """Thin aiohttp client for the state server.

    Every call has a bounded timeout. Reads return ``None`` and writes return
    ``False`` on any transport, status or decoding failure; nothing raises.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 3.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "RemoteApi":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and self._owns_session:
            await session.close()

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, str] | None = None,
        headers_out: dict[str, str] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with self._client().request(
                method, url, json=json, params=params, timeout=self._timeout
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    log.debug("%s %s -> %s: %s", method, path, resp.status, body[:200])
                    return None
                if headers_out is not None:
                    headers_out.update((key.lower(), value) for key, value in resp.headers.items())
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log.debug("%s %s failed: %r", method, path, exc)
            return None

    async def get_games(self) -> tuple[list[GameEntry], int | None] | None:
        """Entries plus the server's last purge time, if any."""
        headers: dict[str, str] = {}
        data = await self._request("GET", "/api/games", headers_out=headers)
        if data is None:
            return None
        try:
            entries = entries_from_payload(data)
        except PayloadError as exc:
            log.warning("Server returned malformed entries: %s", exc)
            return None
        purged_at = headers.get(PURGED_AT_HEADER.lower())
        try:
            return entries, int(purged_at) if purged_at else None
        except ValueError:
            log.warning("Ignoring malformed %s header: %r", PURGED_AT_HEADER, purged_at)
            return entries, None

    async def get_entries(self) -> list[GameEntry] | None:
        games = await self.get_games()
        return None if games is None else games[0]

    async def put_entries(self, entries: Sequence[GameEntry]) -> bool:
        data = await self._request("POST", "/api/games", json={"games": entries_to_payload(entries)})
        return data is not None

    async def delete_entries(self) -> bool:
        return await self._request("DELETE", "/api/games") is not None

    async def get_prices(self) -> dict[str, float] | None:
        data = await self._request("GET", "/api/prices")
        return dict(data) if isinstance(data, dict) else None

    async def put_prices(self, prices: Mapping[str, float]) -> bool:
        return await self._request("POST", "/api/prices", json={"prices": dict(prices)}) is not None

    async def get_thresholds(self) -> HouseThresholds | None:
        data = await self._request("GET", "/api/thresholds")
        return self._thresholds(data)

    async def put_thresholds(self, patch: Mapping[str, int]) -> HouseThresholds | None:
        data = await self._request("POST", "/api/thresholds", json=dict(patch))
        return self._thresholds(data)

    @staticmethod
    def _thresholds(data: Any) -> HouseThresholds | None:
        if data is None:
            return None
        try:
            return HouseThresholds.from_payload(data)
        except PayloadError:
            return None

    async def heartbeat(self, house_id: str) -> dict[str, bool] | None:
        data = await self._request("POST", "/api/heartbeat", json={"houseId": house_id})
        return dict(data) if isinstance(data, dict) else None

    async def get_house_status(self) -> dict[str, bool] | None:
        data = await self._request("GET", "/api/house-status")
        return dict(data) if isinstance(data, dict) else None

    async def get_session(self) -> VideoSession | None:
        return self._session_payload(await self._request("GET", "/api/video-session"))

    async def update_session(self, patch: Mapping[str, Any]) -> VideoSession | None:
        data = await self._request("POST", "/api/video-session", json=dict(patch))
        return self._session_payload(data)

    @staticmethod
    def _session_payload(data: Any) -> VideoSession | None:
        if data is None:
            return None
        try:
            return VideoSession.from_payload(data)
        except PayloadError as exc:
            log.warning("Server returned malformed session: %s", exc)
            return None

    async def post_frame(self, frame: str) -> bool:
        return await self._request("POST", "/api/video-frame", json={"frame": frame}) is not None

    async def post_audio(self, chunk: str) -> bool:
        return await self._request("POST", "/api/audio-chunk", json={"data": chunk}) is not None

    async def get_audio(self) -> dict[str, Any] | None:
        data = await self._request("GET", "/api/audio-chunk")
        return data if isinstance(data, dict) else None

    async def get_events(self, limit: int | None = None) -> list[SessionEvent] | None:
        params = {"limit": str(limit)} if limit is not None else None
        data = await self._request("GET", "/api/events", params=params)
        if not isinstance(data, list):
            return None
        try:
            return [SessionEvent.from_payload(item) for item in data]
        except PayloadError:
            return None

    async def post_event(self, event: SessionEvent) -> SessionEvent | None:
        payload = event.to_payload()
        payload.pop("id", None)
        data = await self._request("POST", "/api/events", json=payload)
        if data is None:
            return None
        try:
            return SessionEvent.from_payload(data)
        except PayloadError:
            return None


class PollLoop:
    """Run ``tick`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[None]],
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._name = name
        self._interval = float(interval)
        self._tick = tick
        self._logger = logger or log
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self, *, run_immediately: bool = True) -> None:
        if self._task is not None:
            return
        if run_immediately:
            await self._tick_once()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=self._name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _tick_once(self) -> None:
        try:
            await self._tick()
        except Exception as exc:
            self._logger.warning("%s poll failed: %s", self._name, exc, exc_info=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self._tick_once()


@dataclass
class WorkerView:
    house_id: str
    entries: list[GameEntry]
    prices: dict[str, float]
    session: VideoSession
    pending_request: bool
    capturing: bool
    mic_active: bool
    last_error: str | None
    counters: dict[str, list[int | None]] = field(default_factory=dict)


class WorkerSync:
    """Counter-side client: logs games, answers video requests, relays audio."""

    def __init__(
        self,
        house_id: str,
        remote: RemoteApi,
        store: EntryStore,
        cache: LocalCache,
        *,
        profiles: Mapping[str, QualityProfile],
        frame_source_factory: Callable[[], FrameSource],
        audio_source_factory: Callable[[], AudioSource],
        poll_interval: float = 3.0,
        heartbeat_interval: float = 5.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.house_id = house_id
        self._remote = remote
        self._store = store
        self._cache = cache
        self._profiles = dict(profiles)
        self._frame_source_factory = frame_source_factory
        self._audio_source_factory = audio_source_factory
        self._clock = clock

        self.entries: list[GameEntry] = store.cached_entries()
        self.prices: dict[str, float] = store.cached_prices()
        self.session = VideoSession()
        self.quality = "medium"
        self.pending_request = False
        self.last_error: str | None = None

        self._frame_source: FrameSource | None = None
        self._frame_task: asyncio.Task | None = None
        self._audio_source: AudioSource | None = None
        self._audio_task: asyncio.Task | None = None

        self._poll = PollLoop("worker-sync", poll_interval, self.poll_once)
        self._heartbeat = PollLoop("worker-heartbeat", heartbeat_interval, self.heartbeat_once)
        self.updates: asyncio.Queue[WorkerView] = asyncio.Queue(maxsize=UPDATE_QUEUE_SIZE)

    @property
    def capturing(self) -> bool:
        return self._frame_task is not None

    @property
    def mic_active(self) -> bool:
        return self._audio_task is not None

    @property
    def last_ack(self) -> int | None:
        value = self._cache.get(LAST_ACK_REQUEST_KEY)
        return int(value) if isinstance(value, (int, float)) else None

    def counters(self) -> dict[str, list[int | None]]:
        """Running counter labels per TV, separators shown as None."""

        tv_ids = sorted({entry.tv_id for entry in self.entries})
        return {tv_id: tv_counters(self.entries, tv_id) for tv_id in tv_ids}

    def view(self) -> WorkerView:
        return WorkerView(
            house_id=self.house_id,
            entries=list(self.entries),
            prices=dict(self.prices),
            session=self.session,
            pending_request=self.pending_request,
            capturing=self.capturing,
            mic_active=self.mic_active,
            last_error=self.last_error,
            counters=self.counters(),
        )

    async def start(self) -> None:
        await self.come_online()
        await self._heartbeat.start()
        await self._poll.start()

    async def stop(self) -> None:
        await self._poll.stop()
        await self._heartbeat.stop()
        await self._stop_capture()
        await self._stop_mic()
        await self._store.flush()

    async def heartbeat_once(self) -> None:
        await self._remote.heartbeat(self.house_id)

    async def come_online(self) -> None:
        """Check for requests missed while offline and release a stale mic relay."""

        session = await self._remote.get_session()
        if session is None:
            return
        self.session = session
        if self._cache.get(MIC_SYNC_KEY) and not self._audio_wanted(session):
            self._cache.set(MIC_SYNC_KEY, False)
        if is_missed_request(session, self.house_id, self.last_ack):
            await self.signal_online(session)

    async def signal_online(self, session: VideoSession) -> None:
        log.info("%s missed a video request; signalling online", self.house_id)
        updated = await self._remote.update_session(
            {
                "lastOnlineSignalTime": self._clock(),
                "lastOnlineSignalHouseId": self.house_id,
            }
        )
        if updated is None:
            return
        self.session = updated
        self._cache.set(LAST_ACK_REQUEST_KEY, session.last_request_time)

    async def poll_once(self) -> None:
        self.entries = await self._store.fetch_entries()
        self.prices = await self._store.fetch_prices()
        session = await self._remote.get_session()
        if session is not None:
            self.session = session
            await self._reconcile(session)
        _offer(self.updates, self.view())

    def _audio_wanted(self, session: VideoSession) -> bool:
        return session.audio_status == "active" and session.house_id == self.house_id

    async def _reconcile(self, session: VideoSession) -> None:
        ours = session.house_id == self.house_id
        if self.capturing and not (ours and session.status == "active"):
            log.info("Session ended remotely; releasing camera")
            await self._stop_capture()
        if ours and session.status == "active":
            self.quality = session.quality
        self.pending_request = is_pending_request(session, self.house_id) and not self.capturing
        if not self.pending_request and is_missed_request(session, self.house_id, self.last_ack):
            await self.signal_online(session)

        wanted = self._audio_wanted(session)
        if wanted and not self.mic_active:
            await self._start_mic()
        elif not wanted and self.mic_active:
            await self._stop_mic()

    # Game logging

    def log_game(self, tv_id: str) -> GameEntry:
        entry = self._store.add_game(tv_id, timestamp=self._clock())
        self.entries = self._store.cached_entries()
        return entry

    def log_separator(self, tv_id: str) -> GameEntry:
        entry = self._store.add_separator(tv_id, timestamp=self._clock())
        self.entries = self._store.cached_entries()
        return entry

    # Video

    async def accept_request(self) -> bool:
        session = self.session
        if not is_pending_request(session, self.house_id) or self.capturing:
            return False
        self._cache.set(LAST_ACK_REQUEST_KEY, session.last_request_time)
        self.pending_request = False

        source = self._frame_source_factory()
        try:
            await asyncio.to_thread(source.open)
        except CapturePermissionError as exc:
            self.last_error = f"Camera access required: {exc}"
            log.warning("Camera unavailable for %s: %s", self.house_id, exc)
            await asyncio.to_thread(source.close)
            reverted = await self._remote.update_session({"status": "idle"})
            if reverted is not None:
                self.session = reverted
            return False

        try:
            updated = await self._remote.update_session({"status": "active"})
        except BaseException:
            await asyncio.to_thread(source.close)
            raise
        if updated is None or updated.status != "active":
            await asyncio.to_thread(source.close)
            self.last_error = "Server did not accept the session start"
            return False

        self.session = updated
        self.quality = updated.quality
        self.last_error = None
        self._frame_source = source
        self._frame_task = asyncio.get_running_loop().create_task(
            self._frame_loop(source), name="worker-frames"
        )
        return True

    async def _frame_loop(self, source: FrameSource) -> None:
        empty = 0
        try:
            while True:
                profile = self._profiles.get(self.quality) or self._profiles["medium"]
                frame = await asyncio.to_thread(source.read_frame, profile)
                if frame:
                    empty = 0
                    await self._remote.post_frame(frame)
                else:
                    empty += 1
                    if empty >= MAX_EMPTY_FRAMES:
                        raise OSError(f"no frames for {empty} reads")
                await asyncio.sleep(profile.interval_sec)
        except Exception as exc:
            await self._camera_lost(source, exc)

    async def _camera_lost(self, source: FrameSource, exc: Exception) -> None:
        """Runs inside the frame task; release the camera and free the slot."""

        log.warning("Camera lost for %s: %s", self.house_id, exc)
        self.last_error = f"Camera lost: {exc}"
        if self._frame_source is source:
            self._frame_task = None
            self._frame_source = None
        try:
            await asyncio.to_thread(source.close)
        except Exception as close_exc:
            log.debug("Closing lost camera failed: %r", close_exc)
        reverted = await self._remote.update_session({"status": "idle", "frame": None})
        if reverted is not None:
            self.session = reverted

    async def _stop_capture(self) -> None:
        task = self._frame_task
        source = self._frame_source
        self._frame_task = None
        self._frame_source = None
        try:
            await _cancel_task(task)
        finally:
            if source is not None:
                await asyncio.to_thread(source.close)

    async def end_session(self) -> None:
        await self._stop_capture()
        updated = await self._remote.update_session({"status": "idle", "frame": None})
        if updated is not None:
            self.session = updated

    # Audio

    async def _start_mic(self) -> None:
        source = self._audio_source_factory()
        try:
            await asyncio.to_thread(source.open)
        except CapturePermissionError as exc:
            self.last_error = f"Microphone access required: {exc}"
            log.warning("Microphone unavailable for %s: %s", self.house_id, exc)
            await asyncio.to_thread(source.close)
            reverted = await self._remote.update_session({"audioStatus": "idle"})
            if reverted is not None:
                self.session = reverted
            return
        self._audio_source = source
        self._cache.set(MIC_SYNC_KEY, True)
        self._audio_task = asyncio.get_running_loop().create_task(
            self._audio_loop(source), name="worker-audio"
        )

    async def _audio_loop(self, source: AudioSource) -> None:
        try:
            while True:
                pcm = await asyncio.to_thread(source.read_chunk)
                if not pcm:
                    await asyncio.sleep(0.1)
                    continue
                await self._remote.post_audio(encode_pcm_chunk(pcm))
        except Exception as exc:
            await self._mic_lost(source, exc)

    async def _mic_lost(self, source: AudioSource, exc: Exception) -> None:
        log.warning("Microphone lost for %s: %s", self.house_id, exc)
        self.last_error = f"Microphone lost: {exc}"
        if self._audio_source is source:
            self._audio_task = None
            self._audio_source = None
        self._cache.set(MIC_SYNC_KEY, False)
        try:
            await asyncio.to_thread(source.close)
        except Exception as close_exc:
            log.debug("Closing lost microphone failed: %r", close_exc)
        reverted = await self._remote.update_session({"audioStatus": "idle"})
        if reverted is not None:
            self.session = reverted

    async def _stop_mic(self) -> None:
        task = self._audio_task
        source = self._audio_source
        self._audio_task = None
        self._audio_source = None
        try:
            await _cancel_task(task)
        finally:
            if source is not None:
                await asyncio.to_thread(source.close)
            self._cache.set(MIC_SYNC_KEY, False)


class AudioMonitor:
    """Owner-side audio slot consumer: dedupes by sequence and tracks level."""

    def __init__(self) -> None:
        self.level = 0.0
        self.link_established = False
        self._last_seq = 0

    def reset(self) -> None:
        self.level = 0.0
        self.link_established = False
        self._last_seq = 0

    def consume(self, snapshot: Mapping[str, Any]) -> list[bytes]:
        seq = snapshot.get("seq")
        chunks = snapshot.get("chunks") or []
        if not isinstance(seq, int) or seq <= self._last_seq or not chunks:
            return []
        self._last_seq = seq
        decoded: list[bytes] = []
        for chunk in chunks:
            try:
                pcm = decode_pcm_chunk(chunk)
            except ValueError as exc:
                log.debug("Skipping undecodable audio chunk: %s", exc)
                continue
            self.level = smooth_level(self.level, chunk_peak(pcm))
            decoded.append(pcm)
        if decoded:
            self.link_established = True
        return decoded


def _log_notification(title: str, body: str, urgent: bool) -> None:
    log.log(logging.WARNING if urgent else logging.INFO, "%s: %s", title, body)


@dataclass
class OwnerView:
    entries: list[GameEntry]
    thresholds: HouseThresholds
    session: VideoSession
    house_status: dict[str, bool]
    hourly: dict[str, int]
    observing: bool
    listening: str | None
    frame: str | None
    audio_level: float
    alerted: dict[str, bool] = field(default_factory=dict)


class OwnerSync:
    """Dashboard-side client: polls shared state and drives session requests."""

    def __init__(
        self,
        remote: RemoteApi,
        tvs: Sequence[TVConfig],
        *,
        house_names: Mapping[str, str] | None = None,
        notify: Callable[[str, str, bool], None] | None = None,
        on_audio: Callable[[bytes], None] | None = None,
        poll_interval: float = 3.0,
        frame_poll_interval: float = 0.15,
        audio_poll_interval: float = 0.75,
        business_day_start_hour: int = 7,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._remote = remote
        self._tvs = list(tvs)
        self._tv_houses = tv_house_map(self._tvs)
        self._names = dict(house_names or {})
        self._notify = notify or _log_notification
        self._on_audio = on_audio
        self._start_hour = business_day_start_hour
        self._clock = clock

        self.evaluator = ThresholdEvaluator(self._tv_houses)
        self.audio = AudioMonitor()
        self.entries: list[GameEntry] = []
        self.thresholds = HouseThresholds()
        self.session = VideoSession()
        self.house_status: dict[str, bool] = {house_id: False for house_id in self._tv_houses.values()}
        self.quality = "medium"
        self.observing = False
        self.listening: str | None = None
        self.last_frame: str | None = None
        self._online_primed = False
        self._last_online_seen = 0

        self._poll = PollLoop("owner-sync", poll_interval, self.poll_once)
        self._frames = PollLoop("owner-frames", frame_poll_interval, self.frame_poll_once)
        self._audio = PollLoop("owner-audio", audio_poll_interval, self.audio_poll_once)
        self.updates: asyncio.Queue[OwnerView] = asyncio.Queue(maxsize=UPDATE_QUEUE_SIZE)

    def _name(self, house_id: str | None) -> str:
        if house_id is None:
            return "A Counter"
        return self._names.get(house_id, house_id)

    def view(self) -> OwnerView:
        return OwnerView(
            entries=list(self.entries),
            thresholds=self.thresholds,
            session=self.session,
            house_status=dict(self.house_status),
            hourly=hourly_counts(self.entries, self._clock(), self._tv_houses),
            observing=self.observing,
            listening=self.listening,
            frame=self.last_frame,
            audio_level=self.audio.level,
            alerted={house_id: self.evaluator.is_flagged(house_id) for house_id in self.house_status},
        )

    async def start(self) -> None:
        await self._poll.start()
        await self._frames.start(run_immediately=False)
        await self._audio.start(run_immediately=False)

    async def stop(self) -> None:
        await self._audio.stop()
        await self._frames.stop()
        await self._poll.stop()

    async def poll_once(self) -> None:
        entries, thresholds, session, status = await asyncio.gather(
            self._remote.get_entries(),
            self._remote.get_thresholds(),
            self._remote.get_session(),
            self._remote.get_house_status(),
        )
        if entries is not None:
            self.entries = entries
        if thresholds is not None:
            self.thresholds = thresholds
        if status is not None:
            self.house_status = status
        if session is not None:
            self._apply_session(session)

        for alert in self.evaluator.evaluate(self.entries, self._clock(), self.thresholds):
            self._notify(
                "Low Yield Alert",
                f"{self._name(alert.house_id)} yield is below threshold!",
                False,
            )
            await self._remote.post_event(alert)
        _offer(self.updates, self.view())

    def _apply_session(self, session: VideoSession) -> None:
        if session.status == "idle":
            self.last_frame = None
        elif session.frame:
            self.last_frame = session.frame
        self.session = session

        signal_time = session.last_online_signal_time
        if not self._online_primed:
            # a signal already present at start-up is not news
            self._online_primed = True
            self._last_online_seen = signal_time or 0
        elif signal_time is not None and signal_time > self._last_online_seen:
            house = session.last_online_signal_house_id or session.house_id
            self._notify(
                "Counter Online",
                f"{self._name(house)} is ready! You can resend your video request now.",
                True,
            )
            self._last_online_seen = signal_time

        self.observing = session.status != "idle"
        if session.status != "idle":
            self.quality = session.quality

    async def frame_poll_once(self) -> None:
        if not self.observing:
            return
        session = await self._remote.get_session()
        if session is not None:
            self._apply_session(session)

    async def audio_poll_once(self) -> None:
        if self.listening is None:
            return
        snapshot = await self._remote.get_audio()
        if snapshot is None:
            return
        was_linked = self.audio.link_established
        chunks = self.audio.consume(snapshot)
        if chunks and not was_linked:
            self._notify("Link Active", f"Microphone from {self._name(self.listening)} is streaming.", True)
        if self._on_audio is not None:
            for pcm in chunks:
                self._on_audio(pcm)

    async def request_video(self, house_id: str) -> bool:
        session = await self._remote.update_session(
            {"houseId": house_id, "status": "requested", "quality": self.quality}
        )
        if session is None:
            return False
        self._apply_session(session)
        return session.status == "requested"

    async def set_quality(self, quality: str) -> bool:
        self.quality = quality
        session = await self._remote.update_session({"quality": quality})
        if session is None:
            return False
        self._apply_session(session)
        return True

    async def end_video(self) -> bool:
        session = await self._remote.update_session({"status": "idle", "frame": None})
        if session is None:
            return False
        self._apply_session(session)
        return True

    async def toggle_audio(self, house_id: str) -> bool:
        if self.listening == house_id:
            self.listening = None
            self.audio.reset()
            session = await self._remote.update_session({"audioStatus": "idle"})
            if session is not None:
                self._apply_session(session)
            return session is not None
        session = await self._remote.update_session({"audioStatus": "active", "houseId": house_id})
        if session is None or session.audio_status != "active":
            return False
        self._apply_session(session)
        self.listening = house_id
        self.audio.reset()
        return True

    async def update_threshold(self, house_id: str, value: int) -> HouseThresholds:
        self.thresholds = self.thresholds.merged({house_id: value})
        updated = await self._remote.put_thresholds({house_id: value})
        if updated is not None:
            self.thresholds = updated
        return self.thresholds

    async def purge_all(self) -> bool:
        ok = await self._remote.delete_entries()
        if ok:
            self.entries = []
        return ok

    async def recent_events(self, limit: int = 100) -> list[SessionEvent]:
        events = await self._remote.get_events(limit)
        return events if events is not None else []

    def stats(self, period: str = "today") -> dict[str, Any]:
        now = self._clock()
        summary = period_stats(self.entries, self._tvs, period, now, start_hour=self._start_hour)
        return {
            "period": period,
            "totalGames": summary.total_games,
            "totalRevenue": summary.total_revenue,
            "houses": {
                item.house_id: {"games": item.total_games, "revenue": item.total_revenue}
                for item in summary.houses
            },
            "tvPerformance": tv_performance(
                entries_since(self.entries, period_start(period, now, start_hour=self._start_hour)),
                self._tvs,
            ),
            "hourly": hourly_counts(self.entries, now, self._tv_houses),
        }
