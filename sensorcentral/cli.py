"""SensorCentral CLI: run the hub, inject ingest messages, read cached snapshots."""

import argparse
import json
import sys


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="sensorcentral",
        description="SensorCentral: sensor ingestion, watchdog alerting and notifications",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Hub serve command
    serve_parser = subparsers.add_parser("serve", help="Run ingestion, alerting and notification modules")
    serve_parser.add_argument("--db", default=None, help="SQLite database path (default: $SENSORCENTRAL_DB)")
    serve_parser.add_argument("--redis-url", default=None, help="Redis URL (default: $REDIS_URL)")
    serve_parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    serve_parser.add_argument("--quiet", action="store_true", help="Only show WARNING and above")

    # Publish one raw ingest message
    ingest_parser = subparsers.add_parser("ingest", help="Publish a raw message to an ingest queue")
    ingest_sub = ingest_parser.add_subparsers(dest="ingest_command")
    sensor_parser = ingest_sub.add_parser("sensor", help="Sensor sample")
    sensor_parser.add_argument("id", help="Sensor id")
    sensor_parser.add_argument("value", type=float, help="Sample value")
    sensor_parser.add_argument("--device", dest="device_id", default=None, help="Device id")
    sensor_parser.add_argument("--dt", default=None, help="ISO timestamp (default: now)")
    sensor_parser.add_argument("--duration", type=float, default=None, help="Sample duration in seconds")
    device_parser = ingest_sub.add_parser("device", help="Device ping")
    device_parser.add_argument("id", help="Device id")
    device_parser.add_argument("--data", default=None, help="deviceData as a JSON object")
    control_parser = ingest_sub.add_parser("control", help="Device control message")
    control_parser.add_argument("id", help="Device id")
    control_parser.add_argument("type", choices=["restart", "watchdogReset", "noSensorData"])
    ingest_parser.add_argument("--redis-url", default=None, help="Redis URL (default: $REDIS_URL)")

    # Cached snapshots
    snapshot_parser = subparsers.add_parser("snapshot", help="Print cached sensor/device snapshots as JSON")
    snapshot_parser.add_argument("kind", choices=["sensor", "device"])
    snapshot_parser.add_argument("ids", nargs="+", help="Ids to look up")
    snapshot_parser.add_argument("--redis-url", default=None, help="Redis URL (default: $REDIS_URL)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _dispatch(args)


def _dispatch(args):
    if args.command == "serve":
        log_level = "INFO"
        if args.verbose:
            log_level = "DEBUG"
        elif args.quiet:
            log_level = "WARNING"
        _serve(args.db, args.redis_url, log_level)

    elif args.command == "ingest":
        if not args.ingest_command:
            print("Usage: sensorcentral ingest {sensor|device|control} ...")
            sys.exit(1)
        queue_name, payload = build_ingest_message(args)
        message_id = _run_with_client(args.redis_url, lambda hub: hub.queue.publish(queue_name, payload))
        print(f"{queue_name}: {message_id}")

    elif args.command == "snapshot":
        snapshots = _run_with_client(args.redis_url, lambda hub: _read_snapshots(hub, args.kind, args.ids))
        print(json.dumps(snapshots, indent=2))

    else:
        print(f"Unknown command: {args.command}")
        sys.exit(1)


def build_ingest_message(args) -> tuple[str, dict]:
    """Map ``ingest`` arguments to (queue name, payload)."""
    from sensorcentral.hub.constants import QUEUE_CONTROL, QUEUE_DEVICE, QUEUE_SENSOR

    if args.ingest_command == "sensor":
        payload = {"id": args.id, "value": args.value}
        if args.device_id:
            payload["deviceId"] = args.device_id
        if args.dt:
            payload["dt"] = args.dt
        if args.duration is not None:
            payload["duration"] = args.duration
        return QUEUE_SENSOR, payload
    if args.ingest_command == "device":
        payload = {"id": args.id}
        if args.data:
            payload["deviceData"] = json.loads(args.data)
        return QUEUE_DEVICE, payload
    return QUEUE_CONTROL, {"id": args.id, "type": args.type}


def _config(db: str | None = None, redis_url: str | None = None):
    from pathlib import Path

    from sensorcentral.config import AppConfig

    config = AppConfig.from_env()
    if db:
        config.storage.db_path = Path(db)
    if redis_url:
        config.redis.url = redis_url
    return config


async def _read_snapshots(hub, kind: str, ids: list[str]) -> list[dict | None]:
    from sensorcentral.modules.ingestion import IngestionPipeline

    pipeline = IngestionPipeline(hub)
    if kind == "sensor":
        snapshots = await pipeline.get_cached_sensor_snapshot(*ids)
    else:
        snapshots = await pipeline.get_cached_device_snapshot(*ids)
    return [snapshot.to_dict() if snapshot else None for snapshot in snapshots]


def _run_with_client(redis_url: str | None, action):
    """Run ``action(hub)`` against Redis without starting any module."""
    import asyncio

    from sensorcentral.hub.core import SensorHub

    async def run():
        hub = SensorHub(_config(redis_url=redis_url))
        try:
            return await action(hub)
        finally:
            await hub.redis.aclose()

    return asyncio.run(run())


def _serve(db: str | None, redis_url: str | None, log_level: str = "INFO"):
    """Start the SensorCentral hub and block until SIGINT/SIGTERM."""
    import asyncio
    import logging
    import signal

    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("sensorcentral.serve")

    from sensorcentral.hub.core import SensorHub
    from sensorcentral.modules.alerts import AlertEngine
    from sensorcentral.modules.ingestion import IngestionPipeline
    from sensorcentral.modules.notify import NotificationDispatch

    async def start():
        config = _config(db, redis_url)

        logger.info("=" * 70)
        logger.info("SensorCentral")
        logger.info("=" * 70)
        logger.info(f"Database: {config.storage.db_path}")
        logger.info(f"Redis: {config.redis.url}")
        logger.info("=" * 70)

        hub = SensorHub(config)
        # alerting and notification subscribe before ingestion starts publishing
        hub.register_module(NotificationDispatch(hub))
        hub.register_module(AlertEngine(hub))
        hub.register_module(IngestionPipeline(hub))
        await hub.initialize()

        total = len(hub.module_status)
        running = sum(1 for s in hub.module_status.values() if s == "running")
        failed = [mid for mid, s in hub.module_status.items() if s == "failed"]
        if failed:
            logger.warning(f"Loaded {running}/{total} modules ({', '.join(failed)} failed)")
        else:
            logger.info(f"Loaded {running}/{total} modules (all healthy)")

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        try:
            await stop.wait()
        finally:
            logger.info("Uptime %.0fs, stopping", hub.get_uptime_seconds())
            await hub.shutdown()

    asyncio.run(start())


if __name__ == "__main__":
    main()
