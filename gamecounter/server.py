#!/usr/bin/env python3
"""
aiohttp server holding the shared, in-memory game counter state.

Everything lives in process memory and is lost on restart; /healthz reports
the start time so clients can notice a reset.

Endpoints:
  GET    /api/games          -> list of game entries (X-Purged-At after a purge)
  POST   /api/games          -> bulk replace {games: [...]}
  DELETE /api/games          -> purge all entries, remembering when
  GET    /api/prices         -> {tvId: price}
  POST   /api/prices         -> replace {prices: {...}} (floored to base price)
  GET    /api/thresholds     -> {house1, house2}
  POST   /api/thresholds     -> merge-update
  POST   /api/heartbeat      -> liveness ping {houseId}
  GET    /api/house-status   -> {house1: bool, house2: bool}
  GET    /api/video-session  -> global session slot
  POST   /api/video-session  -> partial update through the state machine
  POST   /api/video-frame    -> latest frame {frame}
  GET    /api/audio-chunk    -> {seq, chunks}
  POST   /api/audio-chunk    -> latest chunk {data}
  GET    /api/events         -> bounded event tail (?limit=N)
  POST   /api/events         -> append {type, houseId, ...}
  GET    /api/config/tvs     -> TV catalogue and house names
  GET    /healthz            -> {"status": "ok", "started_at": ...}
"""

import argparse
import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from aiohttp import web
from aiohttp.web import AppKey

from gamecounter.config import get_cfg, house_names, log_level_name, reload_cfg
from gamecounter.entry_store import normalize_prices
from gamecounter.event_log import SessionEventLog
from gamecounter.heartbeat import HeartbeatTracker
from gamecounter.models import (
    HOUSE_IDS,
    PURGED_AT_HEADER,
    GameEntry,
    HouseThresholds,
    PayloadError,
    SessionEvent,
    TVConfig,
    entries_from_payload,
    entries_to_payload,
    now_ms,
    tv_configs_from_cfg,
)
from gamecounter.session_state import SessionCoordinator, TransitionError

DEFAULT_EVENTS_LIMIT = 100


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    logging.getLogger("aiohttp.access").setLevel(level)


@dataclass
class ServerState:
    tvs: dict[str, TVConfig]
    thresholds: HouseThresholds
    heartbeats: HeartbeatTracker
    events: SessionEventLog
    sessions: SessionCoordinator
    clock: Callable[[], int]
    started_at: int
    entries: list[GameEntry] = field(default_factory=list)
    prices: dict[str, float] = field(default_factory=dict)
    purged_at: int | None = None


STATE_KEY: AppKey[ServerState] = web.AppKey("gamecounter_state", ServerState)
SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)


def _bad_request(exc: PayloadError) -> web.Response:
    return web.json_response({"error": str(exc), "errors": list(exc.errors)}, status=400)


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise PayloadError(f"Invalid JSON payload: {exc}") from exc


def build_app(
    cfg: Mapping[str, Any] | None = None,
    *,
    clock: Callable[[], int] | None = None,
) -> web.Application:
    log = logging.getLogger("gamecounter.server")
    cfg = cfg if cfg is not None else get_cfg()
    server_cfg = cfg.get("server", {})
    clock = clock or now_ms

    middlewares: list[Any] = []

    if server_cfg.get("cors_enabled"):

        @web.middleware
        async def _cors_middleware(request: web.Request, handler):
            if request.method == "OPTIONS":
                response = web.Response(status=204)
            else:
                response = await handler(request)

            if request.headers.get("Origin"):
                response.headers.setdefault("Access-Control-Allow-Origin", "*")
                response.headers.setdefault("Access-Control-Allow-Methods", "GET,POST,DELETE,OPTIONS")
                response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
                response.headers.setdefault("Access-Control-Expose-Headers", PURGED_AT_HEADER)
                response.headers.setdefault("Access-Control-Max-Age", "86400")

            return response

        middlewares.append(_cors_middleware)

    events = SessionEventLog(
        history_limit=int(server_cfg.get("event_history_limit", DEFAULT_EVENTS_LIMIT))
    )
    state = ServerState(
        tvs={tv.id: tv for tv in tv_configs_from_cfg(cfg)},
        thresholds=HouseThresholds.from_payload(cfg.get("thresholds", {})),
        heartbeats=HeartbeatTracker(window_ms=int(server_cfg.get("liveness_window_ms", 10000))),
        events=events,
        sessions=SessionCoordinator(
            events,
            default_quality=str(cfg.get("streaming", {}).get("default_quality", "medium")),
        ),
        clock=clock,
        started_at=clock(),
    )

    app = web.Application(middlewares=middlewares)
    app[STATE_KEY] = state
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()
    names = house_names(cfg)

    # Entries

    async def games_get(_: web.Request) -> web.Response:
        headers = {}
        if state.purged_at is not None:
            headers[PURGED_AT_HEADER] = str(state.purged_at)
        return web.json_response(entries_to_payload(state.entries), headers=headers)

    async def games_post(request: web.Request) -> web.Response:
        try:
            data = await _read_json(request)
            if not isinstance(data, dict) or "games" not in data:
                raise PayloadError("Invalid data: expected {\"games\": [...]}")
            entries = entries_from_payload(data["games"])
        except PayloadError as exc:
            return _bad_request(exc)
        if state.purged_at is not None:
            kept = [entry for entry in entries if entry.timestamp > state.purged_at]
            if len(kept) != len(entries):
                log.info("Dropped %d entries logged before the last purge", len(entries) - len(kept))
            entries = kept
        state.entries = entries
        log.debug("Replaced game list (%d entries)", len(entries))
        return web.json_response({"games": entries_to_payload(state.entries)})

    async def games_delete(_: web.Request) -> web.Response:
        purged = len(state.entries)
        state.entries = []
        state.purged_at = state.clock()
        log.warning("Purged all game entries (%d removed)", purged)
        return web.json_response({"games": [], "purgedAt": state.purged_at})

    # Prices

    async def prices_get(_: web.Request) -> web.Response:
        return web.json_response(state.prices)

    async def prices_post(request: web.Request) -> web.Response:
        try:
            data = await _read_json(request)
            if not isinstance(data, dict) or "prices" not in data:
                raise PayloadError("Invalid data: expected {\"prices\": {...}}")
            prices = normalize_prices(data["prices"], state.tvs)
        except PayloadError as exc:
            return _bad_request(exc)
        state.prices = prices
        return web.json_response(state.prices)

    # Thresholds

    async def thresholds_get(_: web.Request) -> web.Response:
        return web.json_response(state.thresholds.to_payload())

    async def thresholds_post(request: web.Request) -> web.Response:
        try:
            data = await _read_json(request)
            thresholds = state.thresholds.merged(data)
        except PayloadError as exc:
            return _bad_request(exc)
        state.thresholds = thresholds
        return web.json_response(state.thresholds.to_payload())

    # Liveness

    async def heartbeat_post(request: web.Request) -> web.Response:
        try:
            data = await _read_json(request)
            house_id = data.get("houseId") if isinstance(data, dict) else None
            if house_id not in HOUSE_IDS:
                raise PayloadError(f"houseId must be one of {', '.join(HOUSE_IDS)}")
        except PayloadError as exc:
            return _bad_request(exc)
        now = state.clock()
        state.heartbeats.record(house_id, now)
        return web.json_response(state.heartbeats.snapshot(now))

    async def house_status_get(_: web.Request) -> web.Response:
        return web.json_response(state.heartbeats.snapshot(state.clock()))

    # Live session

    async def video_session_get(_: web.Request) -> web.Response:
        return web.json_response(state.sessions.session.to_payload())

    async def video_session_post(request: web.Request) -> web.Response:
        try:
            data = await _read_json(request)
            session = state.sessions.update(data, state.clock())
        except PayloadError as exc:
            return _bad_request(exc)
        except TransitionError as exc:
            return web.json_response(
                {"error": str(exc), "session": state.sessions.session.to_payload()},
                status=409,
            )
        return web.json_response(session.to_payload())

    async def video_frame_post(request: web.Request) -> web.Response:
        try:
            data = await _read_json(request)
            frame = data.get("frame") if isinstance(data, dict) else None
            session = state.sessions.post_frame(frame)
        except PayloadError as exc:
            return _bad_request(exc)
        return web.json_response(session.to_payload(include_frame=False))

    async def audio_chunk_get(_: web.Request) -> web.Response:
        return web.json_response(state.sessions.audio_snapshot())

    async def audio_chunk_post(request: web.Request) -> web.Response:
        try:
            data = await _read_json(request)
            chunk = data.get("data") if isinstance(data, dict) else None
            snapshot = state.sessions.post_audio(chunk)
        except PayloadError as exc:
            return _bad_request(exc)
        return web.json_response(snapshot)

    # Events

    async def events_get(request: web.Request) -> web.Response:
        raw_limit = request.query.get("limit")
        limit: int | None = None
        if raw_limit is not None:
            try:
                limit = max(0, int(raw_limit))
            except ValueError:
                return web.json_response({"error": "limit must be an integer"}, status=400)
        return web.json_response([event.to_payload() for event in state.events.recent(limit)])

    async def events_post(request: web.Request) -> web.Response:
        try:
            data = await _read_json(request)
            event = SessionEvent.from_payload(data, now=state.clock())
        except PayloadError as exc:
            return _bad_request(exc)
        stored = state.events.append(event)
        return web.json_response(stored.to_payload())

    # Catalogue

    async def tvs_get(_: web.Request) -> web.Response:
        return web.json_response(
            {
                "tvs": [tv.to_payload() for tv in state.tvs.values()],
                "houses": names,
            }
        )

    async def healthz(_: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "started_at": state.started_at})

    # Routes
    app.router.add_get("/api/games", games_get)
    app.router.add_post("/api/games", games_post)
    app.router.add_delete("/api/games", games_delete)
    app.router.add_get("/api/prices", prices_get)
    app.router.add_post("/api/prices", prices_post)
    app.router.add_get("/api/thresholds", thresholds_get)
    app.router.add_post("/api/thresholds", thresholds_post)
    app.router.add_post("/api/heartbeat", heartbeat_post)
    app.router.add_get("/api/house-status", house_status_get)
    app.router.add_get("/api/video-session", video_session_get)
    app.router.add_post("/api/video-session", video_session_post)
    app.router.add_post("/api/video-frame", video_frame_post)
    app.router.add_get("/api/audio-chunk", audio_chunk_get)
    app.router.add_post("/api/audio-chunk", audio_chunk_post)
    app.router.add_get("/api/events", events_get)
    app.router.add_post("/api/events", events_post)
    app.router.add_get("/api/config/tvs", tvs_get)
    app.router.add_get("/healthz", healthz)
    return app


class ServerHandle:
    """Handle returned by start_server_in_thread(). Call stop() to cleanly shut down."""
    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    def stop(self, timeout: float = 5.0):
        log = logging.getLogger("gamecounter.server")
        log.info("Stopping server ...")
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.app[SHUTDOWN_EVENT_KEY].set)

            async def _cleanup():
                try:
                    await self.runner.cleanup()
                except Exception as e:
                    log.warning("Error during aiohttp runner cleanup: %r", e)

            fut = asyncio.run_coroutine_threadsafe(_cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("server stopped; in-memory state discarded")


def start_server_in_thread(
    host: str = "0.0.0.0",
    port: int = 3001,
    *,
    access_log: bool = False,
    log_level: str = "INFO",
    cfg: Mapping[str, Any] | None = None,
) -> ServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if not access_log:
        _quiet_noisy_dependencies()
    log = logging.getLogger("gamecounter.server")

    loop = asyncio.new_event_loop()
    runner_box = {}
    app_box = {}
    failure_box = {}

    def _run():
        asyncio.set_event_loop(loop)
        try:
            app = build_app(cfg)
            runner = web.AppRunner(app, access_log=log if access_log else None)
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except Exception as exc:
            failure_box["error"] = exc
            return
        runner_box["runner"] = runner
        app_box["app"] = app
        log.info("server started on %s:%s", host, port)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception:
                pass

    t = threading.Thread(target=_run, name="gamecounter_server", daemon=True)
    t.start()

    while "runner" not in runner_box or "app" not in app_box:
        if "error" in failure_box:
            raise RuntimeError(f"Unable to start server: {failure_box['error']}") from failure_box["error"]
        time.sleep(0.05)

    return ServerHandle(t, loop, runner_box["runner"], app_box["app"])


def cli_main():
    parser = argparse.ArgumentParser(description="Game counter state server (in-memory).")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", help="Python logging level (default: INFO, DEBUG in dev mode).")
    args = parser.parse_args()

    cfg = reload_cfg()
    log_level = args.log_level or log_level_name(cfg)
    server_cfg = cfg.get("server", {})
    bind_host = args.host if args.host else server_cfg.get("listen_host", "0.0.0.0")
    bind_port = args.port if args.port else int(server_cfg.get("listen_port", 3001))

    try:
        handle = start_server_in_thread(
            host=bind_host,
            port=bind_port,
            access_log=args.access_log,
            log_level=log_level,
            cfg=cfg,
        )
    except RuntimeError as exc:
        logging.getLogger("gamecounter.server").error("%s", exc)
        return 1
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
        return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
