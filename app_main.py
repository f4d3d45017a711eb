"""
Powerwatch – heartbeat liveness and outage history service. Entry point.
- serve (default): HTTP API + liveness sweeper + periodic flush
- sweep-once: load state, run one liveness sweep, flush, exit
- cleanup --hours N: drop client records silent for N hours, exit
SIGINT/SIGTERM stop the server gracefully; state is flushed before exit.
"""
import argparse
import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Optional

from aiohttp import web

from powerwatch.api import create_app
from powerwatch.config import STORAGE_BACKENDS, ServiceConfig, apply_env, dict_to_service_config, load_config
from powerwatch.logging_setup import setup_logging
from powerwatch.storage import RedisStorage, build_storage
from powerwatch.sweeper import LivenessSweeper, run_background
from powerwatch.tracker import FlushPolicy, LivenessTracker

logger = logging.getLogger("powerwatch.main")


def build_config(args: argparse.Namespace) -> ServiceConfig:
    config = apply_env(load_config())
    overrides = {
        "host": args.host,
        "port": args.port,
        "storage": args.storage,
        "snapshot_path": args.snapshot,
        "redis_url": args.redis_url,
        "log_path": args.log_path,
    }
    for key, value in overrides.items():
        if value is not None:
            config[key] = value
    if args.write_through:
        config["write_through"] = True
    return dict_to_service_config(config)


async def open_tracker(cfg: ServiceConfig) -> LivenessTracker:
    storage = build_storage(
        cfg.storage,
        snapshot_path=cfg.resolved_snapshot_path,
        redis_url=cfg.redis_url,
        redis_prefix=cfg.redis_prefix,
        client_ttl_days=cfg.client_ttl_days,
        timeout=cfg.storage_timeout,
    )
    if isinstance(storage, RedisStorage):
        await storage.ping()
    tracker = LivenessTracker(
        storage,
        max_events=cfg.max_events,
        liveness_timeout=timedelta(seconds=cfg.liveness_timeout),
        flush_policy=FlushPolicy(write_through=cfg.write_through, interval=cfg.flush_interval),
    )
    await tracker.load()
    return tracker


async def serve(cfg: ServiceConfig) -> None:
    tracker = await open_tracker(cfg)
    runner = web.AppRunner(create_app(tracker))
    await runner.setup()
    site = web.TCPSite(runner, cfg.host, cfg.port)
    await site.start()
    logger.info("Listening on http://%s:%d (storage=%s)", cfg.host, cfg.port, cfg.storage)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: KeyboardInterrupt ends asyncio.run instead
            pass

    background = asyncio.create_task(run_background(tracker, cfg.sweep_interval))
    try:
        await stop.wait()
        logger.info("Shutdown requested, draining")
    finally:
        background.cancel()
        await asyncio.gather(background, return_exceptions=True)
        await runner.cleanup()
        await tracker.close()


async def sweep_once(cfg: ServiceConfig) -> int:
    tracker = await open_tracker(cfg)
    try:
        events = await LivenessSweeper(tracker, cfg.sweep_interval).sweep_once()
    finally:
        await tracker.close()
    for event in events:
        print(f"{event.client_id}: {event.details}")
    return 0


async def cleanup(cfg: ServiceConfig, hours: int) -> int:
    tracker = await open_tracker(cfg)
    try:
        result = await tracker.cleanup(hours)
    finally:
        await tracker.close()
    print(f"Removed {result['removedCount']} clients older than {hours} hours, {result['remainingClients']} remaining")
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Powerwatch – heartbeat liveness and outage history")
    parser.add_argument("command", nargs="?", default="serve", choices=("serve", "sweep-once", "cleanup"))
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port")
    parser.add_argument("--storage", choices=STORAGE_BACKENDS, help="Storage backend")
    parser.add_argument("--snapshot", help="Snapshot file for file storage")
    parser.add_argument("--redis-url", help="Redis URL for redis storage")
    parser.add_argument("--write-through", action="store_true", help="Flush after every change")
    parser.add_argument("--log-path", help="Directory for rotating logs")
    parser.add_argument("--hours", type=int, default=24, help="cleanup: age threshold in hours")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    cfg = build_config(args)
    setup_logging(cfg.log_path or None)
    logger.info("Powerwatch started (%s)", args.command)
    try:
        if args.command == "sweep-once":
            return asyncio.run(sweep_once(cfg))
        if args.command == "cleanup":
            return asyncio.run(cleanup(cfg, args.hours))
        asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Powerwatch stopped (%s)", args.command)
    return 0


if __name__ == "__main__":
    sys.exit(main())
