import asyncio
import copy

from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from gamecounter import config as config_module
from gamecounter import server


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def _cfg(**server_overrides):
    cfg = copy.deepcopy(config_module._DEFAULTS)
    cfg["server"].update(server_overrides)
    return cfg


async def _start_client(app: web.Application) -> tuple[TestClient, TestServer]:
    test_server = TestServer(app)
    client = TestClient(test_server)
    await client.start_server()
    return client, test_server


def _game(entry_id: str, tv_id: str = "A1", timestamp: int = 1_000, amount: float = 20) -> dict:
    return {"id": entry_id, "tvId": tv_id, "timestamp": timestamp, "completed": True, "amount": amount}


def test_games_replace_and_purge():
    async def runner():
        client, test_server = await _start_client(server.build_app(_cfg()))
        try:
            resp = await client.get("/api/games")
            assert resp.status == 200
            assert await resp.json() == []

            games = [_game("a"), {**_game("b", timestamp=2_000, amount=0), "isSeparator": True}]
            resp = await client.post("/api/games", json={"games": games})
            assert resp.status == 200
            assert (await resp.json())["games"] == games

            resp = await client.get("/api/games")
            assert await resp.json() == games

            resp = await client.delete("/api/games")
            assert resp.status == 200
            resp = await client.get("/api/games")
            assert await resp.json() == []
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_purge_is_advertised_and_rejects_stale_entries():
    async def runner():
        clock = FakeClock(start=5_000)
        client, test_server = await _start_client(server.build_app(_cfg(), clock=clock))
        try:
            resp = await client.get("/api/games")
            assert server.PURGED_AT_HEADER not in resp.headers

            await client.post("/api/games", json={"games": [_game("a", timestamp=4_000)]})
            resp = await client.delete("/api/games")
            assert await resp.json() == {"games": [], "purgedAt": 5_000}

            resp = await client.get("/api/games")
            assert resp.headers[server.PURGED_AT_HEADER] == "5000"

            # a worker that missed the purge re-sends its whole cached list
            stale = [_game("a", timestamp=4_000), _game("edge", timestamp=5_000)]
            fresh = _game("b", timestamp=6_000)
            resp = await client.post("/api/games", json={"games": stale + [fresh]})
            assert (await resp.json())["games"] == [fresh]
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_malformed_bodies_do_not_mutate_state():
    async def runner():
        client, test_server = await _start_client(server.build_app(_cfg()))
        try:
            await client.post("/api/games", json={"games": [_game("keep")]})

            for body in ({"games": "nope"}, {"items": []}, {"games": [{"id": "x"}]}, [1, 2]):
                resp = await client.post("/api/games", json=body)
                assert resp.status == 400, body
                assert "error" in await resp.json()

            resp = await client.post(
                "/api/games",
                data="{broken",
                headers={"Content-Type": "application/json"},
            )
            assert resp.status == 400

            resp = await client.get("/api/games")
            assert [item["id"] for item in await resp.json()] == ["keep"]

            resp = await client.post("/api/thresholds", json={"house1": -1})
            assert resp.status == 400
            resp = await client.post("/api/thresholds", json={"house3": 1})
            assert resp.status == 400
            resp = await client.post("/api/thresholds", json={"house1": 2.5})
            assert resp.status == 400
            resp = await client.get("/api/thresholds")
            assert await resp.json() == {"house1": 2, "house2": 2}

            resp = await client.post("/api/video-session", json={"status": "streaming"})
            assert resp.status == 400
            resp = await client.post("/api/heartbeat", json={"houseId": "house9"})
            assert resp.status == 400
            resp = await client.post("/api/events", json={"type": "party", "houseId": "house1"})
            assert resp.status == 400
            resp = await client.get("/api/events")
            assert await resp.json() == []
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_prices_are_floored_and_validated():
    async def runner():
        client, test_server = await _start_client(server.build_app(_cfg()))
        try:
            resp = await client.post("/api/prices", json={"prices": {"A1": 10, "C1": 30}})
            assert resp.status == 200
            assert await resp.json() == {"A1": 20, "C1": 30}

            resp = await client.post("/api/prices", json={"prices": {"Z9": 30}})
            assert resp.status == 400

            resp = await client.get("/api/prices")
            assert await resp.json() == {"A1": 20, "C1": 30}
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_thresholds_merge_update():
    async def runner():
        client, test_server = await _start_client(server.build_app(_cfg()))
        try:
            resp = await client.post("/api/thresholds", json={"house1": 5})
            assert await resp.json() == {"house1": 5, "house2": 2}
            resp = await client.post("/api/thresholds", json={"house2": 0})
            assert await resp.json() == {"house1": 5, "house2": 0}
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_heartbeat_liveness_uses_injected_clock():
    async def runner():
        clock = FakeClock()
        client, test_server = await _start_client(server.build_app(_cfg(), clock=clock))
        try:
            resp = await client.get("/api/house-status")
            assert await resp.json() == {"house1": False, "house2": False}

            resp = await client.post("/api/heartbeat", json={"houseId": "house1"})
            assert await resp.json() == {"house1": True, "house2": False}

            clock.advance(9_999)
            resp = await client.get("/api/house-status")
            assert (await resp.json())["house1"] is True

            clock.advance(2)
            resp = await client.get("/api/house-status")
            assert (await resp.json())["house1"] is False
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_video_session_round_trip_and_events():
    async def runner():
        clock = FakeClock()
        client, test_server = await _start_client(server.build_app(_cfg(), clock=clock))
        try:
            resp = await client.get("/api/video-session")
            assert await resp.json() == {
                "houseId": None,
                "status": "idle",
                "quality": "medium",
                "audioStatus": "idle",
            }

            resp = await client.post("/api/video-frame", json={"frame": "data:image/jpeg;base64,AAA"})
            assert resp.status == 200
            resp = await client.get("/api/video-session")
            assert "frame" not in await resp.json()

            resp = await client.post(
                "/api/video-session",
                json={"houseId": "house1", "status": "requested", "quality": "high"},
            )
            requested = await resp.json()
            assert requested["status"] == "requested"
            assert requested["lastRequestTime"] == clock.now
            assert requested["lastRequestedHouseId"] == "house1"

            resp = await client.post("/api/video-session", json={"status": "active"})
            assert (await resp.json())["status"] == "active"

            resp = await client.post("/api/video-frame", json={"frame": "data:image/jpeg;base64,BBB"})
            assert "frame" not in await resp.json()
            resp = await client.get("/api/video-session")
            live = await resp.json()
            assert live["frame"] == "data:image/jpeg;base64,BBB"
            assert live["quality"] == "high"

            clock.advance(42_000)
            resp = await client.post("/api/video-session", json={"status": "idle", "frame": None})
            ended = await resp.json()
            assert ended["status"] == "idle"
            assert ended["houseId"] is None
            assert "frame" not in ended

            resp = await client.get("/api/events")
            events = await resp.json()
            assert [event["type"] for event in events] == ["video_request", "video_session_ended"]
            assert events[1]["duration"] == 42_000
            assert events[1]["houseId"] == "house1"
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_illegal_transition_returns_conflict():
    async def runner():
        client, test_server = await _start_client(server.build_app(_cfg()))
        try:
            resp = await client.post("/api/video-session", json={"status": "active"})
            assert resp.status == 409
            body = await resp.json()
            assert body["session"]["status"] == "idle"

            await client.post("/api/video-session", json={"houseId": "house1", "status": "requested"})
            resp = await client.post("/api/video-session", json={"houseId": "house2"})
            assert resp.status == 409
            resp = await client.get("/api/video-session")
            assert (await resp.json())["houseId"] == "house1"
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_audio_slot_sequence():
    async def runner():
        client, test_server = await _start_client(server.build_app(_cfg()))
        try:
            resp = await client.post("/api/audio-chunk", json={"data": "AAAA"})
            assert await resp.json() == {"seq": 0, "chunks": []}

            resp = await client.post(
                "/api/video-session", json={"audioStatus": "active", "houseId": "house2"}
            )
            assert (await resp.json())["houseId"] == "house2"

            await client.post("/api/audio-chunk", json={"data": "AAAA"})
            await client.post("/api/audio-chunk", json={"data": "BBBB"})
            resp = await client.get("/api/audio-chunk")
            assert await resp.json() == {"seq": 2, "chunks": ["BBBB"]}

            resp = await client.post("/api/audio-chunk", json={"data": ""})
            assert resp.status == 400

            await client.post("/api/video-session", json={"audioStatus": "idle"})
            resp = await client.get("/api/audio-chunk")
            assert await resp.json() == {"seq": 2, "chunks": []}
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_event_tail_is_bounded():
    async def runner():
        clock = FakeClock()
        client, test_server = await _start_client(
            server.build_app(_cfg(event_history_limit=3), clock=clock)
        )
        try:
            for i in range(5):
                resp = await client.post(
                    "/api/events",
                    json={"type": "yield_alert", "houseId": "house2", "timestamp": i},
                )
                assert resp.status == 200
            stored = await resp.json()
            assert stored["id"] == "5"

            resp = await client.get("/api/events")
            assert [event["timestamp"] for event in await resp.json()] == [2, 3, 4]
            resp = await client.get("/api/events?limit=2")
            assert [event["timestamp"] for event in await resp.json()] == [3, 4]
            resp = await client.get("/api/events?limit=lots")
            assert resp.status == 400

            resp = await client.post("/api/events", json={"type": "counter_online", "houseId": "house1"})
            assert (await resp.json())["timestamp"] == clock.now
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_catalogue_and_health():
    async def runner():
        clock = FakeClock(start=123)
        client, test_server = await _start_client(server.build_app(_cfg(), clock=clock))
        try:
            resp = await client.get("/api/config/tvs")
            payload = await resp.json()
            assert payload["houses"] == {"house1": "House 1", "house2": "House 2"}
            assert payload["tvs"][0] == {"id": "A1", "name": "TV A1", "houseId": "house1", "pricePerGame": 20}
            assert len(payload["tvs"]) == 7

            clock.advance(1_000)
            resp = await client.get("/healthz")
            assert await resp.json() == {"status": "ok", "started_at": 123}
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())


def test_cors_is_opt_in():
    async def runner():
        client, test_server = await _start_client(server.build_app(_cfg(cors_enabled=True)))
        try:
            resp = await client.options("/api/games", headers={"Origin": "http://dash.local"})
            assert resp.status == 204
            assert resp.headers["Access-Control-Allow-Origin"] == "*"
            resp = await client.get("/api/games", headers={"Origin": "http://dash.local"})
            assert resp.headers["Access-Control-Allow-Origin"] == "*"
        finally:
            await client.close()
            await test_server.close()

        client, test_server = await _start_client(server.build_app(_cfg()))
        try:
            resp = await client.get("/api/games", headers={"Origin": "http://dash.local"})
            assert "Access-Control-Allow-Origin" not in resp.headers
        finally:
            await client.close()
            await test_server.close()

    asyncio.run(runner())
