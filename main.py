#!/usr/bin/env python3
"""
Development launcher for the game counter.

- Starts the state server in a background thread
- Optionally runs a worker (counter) or owner (dashboard) client in the foreground
- Ctrl-C exits cleanly

Usage:
  main.py                 # server only
  main.py worker house1   # server + worker client for house1
  main.py owner           # server + owner client
"""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

from gamecounter.capture import ArecordAudioSource, FfmpegFrameSource, quality_profiles
from gamecounter.config import house_names, log_level_name, reload_cfg
from gamecounter.entry_store import EntryStore
from gamecounter.local_cache import LocalCache
from gamecounter.models import HOUSE_IDS, tv_configs_from_cfg
from gamecounter.server import ServerHandle, start_server_in_thread
from gamecounter.sync_client import OwnerSync, RemoteApi, WorkerSync


def _start_dev_server(cfg) -> ServerHandle:
    server_cfg = cfg.get("server", {})
    return start_server_in_thread(
        host=server_cfg.get("listen_host", "0.0.0.0"),
        port=int(server_cfg.get("listen_port", 3001)),
        access_log=False,
        log_level=log_level_name(cfg),
        cfg=cfg,
    )


async def _run_worker(cfg, house_id: str) -> None:
    client_cfg = cfg.get("client", {})
    streaming = cfg.get("streaming", {})
    tvs = [tv for tv in tv_configs_from_cfg(cfg) if tv.house_id == house_id]
    cache = LocalCache(Path(client_cfg.get("cache_path", "~/.gamecounter/cache.json")))
    async with RemoteApi(
        client_cfg.get("server_url", "http://127.0.0.1:3001"),
        timeout_sec=float(client_cfg.get("fetch_timeout_sec", 3.0)),
    ) as remote:
        worker = WorkerSync(
            house_id,
            remote,
            EntryStore(cache, remote, tvs),
            cache,
            profiles=quality_profiles(cfg),
            frame_source_factory=lambda: FfmpegFrameSource(streaming.get("video_device", "/dev/video0")),
            audio_source_factory=lambda: ArecordAudioSource(
                streaming.get("audio_device", "default"),
                sample_rate=int(streaming.get("audio_sample_rate", 16000)),
                chunk_ms=int(streaming.get("audio_chunk_ms", 750)),
            ),
            poll_interval=float(client_cfg.get("worker_poll_interval_sec", 3.0)),
            heartbeat_interval=float(client_cfg.get("heartbeat_interval_sec", 5.0)),
        )
        await worker.start()
        try:
            while True:
                view = await worker.updates.get()
                print(
                    f"[dev] {house_id}: {len(view.entries)} entries, "
                    f"session={view.session.status}, request pending={view.pending_request}"
                )
                if view.pending_request:
                    await worker.accept_request()
        finally:
            await worker.stop()


async def _run_owner(cfg) -> None:
    client_cfg = cfg.get("client", {})
    async with RemoteApi(
        client_cfg.get("server_url", "http://127.0.0.1:3001"),
        timeout_sec=float(client_cfg.get("fetch_timeout_sec", 3.0)),
    ) as remote:
        owner = OwnerSync(
            remote,
            tv_configs_from_cfg(cfg),
            house_names=house_names(cfg),
            poll_interval=float(client_cfg.get("owner_poll_interval_sec", 3.0)),
            frame_poll_interval=float(client_cfg.get("frame_poll_interval_sec", 0.15)),
            audio_poll_interval=float(client_cfg.get("audio_poll_interval_sec", 0.75)),
            business_day_start_hour=int(cfg.get("business_day", {}).get("start_hour", 7)),
        )
        await owner.start()
        try:
            while True:
                view = await owner.updates.get()
                stats = owner.stats("today")
                print(
                    f"[dev] today: {stats['totalGames']} games, {stats['totalRevenue']} revenue, "
                    f"online={view.house_status}, session={view.session.status}"
                )
        finally:
            await owner.stop()


def main():
    parser = argparse.ArgumentParser(description="Game counter development launcher.")
    parser.add_argument("role", nargs="?", choices=("server", "worker", "owner"), default="server")
    parser.add_argument("house", nargs="?", choices=HOUSE_IDS, default="house1")
    args = parser.parse_args()

    cfg = reload_cfg()
    print("[dev] Starting server (Ctrl-C to exit)")
    server = _start_dev_server(cfg)
    try:
        if args.role == "worker":
            asyncio.run(_run_worker(cfg, args.house))
        elif args.role == "owner":
            asyncio.run(_run_owner(cfg))
        else:
            while True:
                time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        print("[dev] Stopping server ...")
        server.stop()
    logging.getLogger("gamecounter.server").info("dev launcher exited")
    return 0


if __name__ == "__main__":
    sys.exit(main())
