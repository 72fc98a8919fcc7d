#!/usr/bin/env python3
"""GeoTrack multi-device simulator.

Runs several independent device sessions against a Traccar server, each with
its own TraccarClient session and TrackingClient, driven by a simulated
position source.

Usage:
    # 5 devices driving around Lyon for 10 minutes
    python -m tools.simulator.simulate --server localhost --port 8082 --protocol http \
        --username admin --password admin --devices 5 --duration 600

    # 3 devices on a waypoint circuit, distance-based reporting
    python -m tools.simulator.simulate --circuit tools/simulator/circuits/lyon_loop.json \
        --devices 3 --mode distance
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import time
import uuid

from geotrack.config import AppConfig, TraccarConfiguration
from geotrack.core.tracker import TrackingClient
from geotrack.main import _setup_logging
from geotrack.source.simulated import Circuit, CircuitSource, RandomWalkSource
from geotrack.transport.traccar import TraccarClient


def make_source(args: argparse.Namespace, index: int, circuit: Circuit | None):
    if circuit is not None:
        # Offset each device by a few waypoints for variety
        return CircuitSource(
            circuit,
            interval_seconds=args.interval,
            start_index=(index * 3) % (len(circuit.waypoints) - 1),
        )

    center_lat, center_lon = args.center
    # Scatter devices within radius of center
    angle = random.uniform(0, 2 * math.pi)
    dist_km = random.uniform(0, args.radius_km)
    lat = center_lat + (dist_km / 111.0) * math.cos(angle)
    lon = center_lon + (dist_km / (111.0 * math.cos(math.radians(center_lat)))) * math.sin(angle)
    return RandomWalkSource(lat, lon, interval_seconds=args.interval)


async def run_device(args: argparse.Namespace, index: int, circuit: Circuit | None) -> TrackingClient:
    """Run one device session for the configured duration."""
    config = TraccarConfiguration(
        server_url=args.server,
        protocol=args.protocol,
        port=args.port,
        device_id=f"sim-{uuid.uuid4().hex[:12]}",
        tracking_mode=args.mode,
        time_interval=args.time_interval,
        distance_threshold=args.distance,
    )
    tracker = TrackingClient(TraccarClient(config), make_source(args, index, circuit))

    async with tracker:
        if args.token:
            ok = tracker.use_token(args.token)
        else:
            ok = await tracker.authenticate(args.username, args.password)
        if not ok:
            print(f"  [{config.device_id}] authentication failed: {tracker.state.error}")
            return tracker
        tracker.start_tracking()
        await asyncio.sleep(args.duration)
        tracker.stop_tracking()
        print(f"  [{config.device_id}] sent={tracker.state.sent_count} "
              f"errors={tracker.state.error_count} queued={tracker.session.queue_depth}")
    return tracker


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    circuit = Circuit.from_json(args.circuit) if args.circuit else None

    print(f"Starting simulation: {args.devices} devices, mode={args.mode}")
    print(f"  Server: {args.protocol}://{args.server}:{args.port}")
    print(f"  Duration: {args.duration}s")
    if circuit is not None:
        print(f"  Circuit: {circuit.name} ({circuit.total_distance_m:.0f} m per lap)")
    print()

    start = time.monotonic()
    trackers = await asyncio.gather(
        *(run_device(args, i, circuit) for i in range(args.devices))
    )
    elapsed = time.monotonic() - start

    total_sent = sum(t.state.sent_count for t in trackers)
    total_errors = sum(t.state.error_count for t in trackers)
    print(f"\nSimulation complete in {elapsed:.1f}s")
    print(f"  Total positions sent: {total_sent}")
    print(f"  Total errors: {total_errors}")
    print(f"  Throughput: {total_sent / max(elapsed, 0.1):.1f} positions/sec")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GeoTrack multi-device simulator")
    parser.add_argument("--server", default="localhost", help="Server host")
    parser.add_argument("--port", type=int, default=8082, help="Server port")
    parser.add_argument("--protocol", choices=["http", "https"], default="http")
    parser.add_argument("--username", default="admin")
    parser.add_argument("--password", default="admin")
    parser.add_argument("--token", default=None, help="Bearer token instead of username/password")
    parser.add_argument("--devices", type=int, default=5, help="Number of simulated devices")
    parser.add_argument("--duration", type=int, default=60, help="Simulation duration in seconds")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between fixes")
    parser.add_argument("--mode", choices=["time", "distance", "angle", "hybrid"], default="hybrid")
    parser.add_argument("--time-interval", type=float, default=10, help="Seconds for time mode")
    parser.add_argument("--distance", type=float, default=50, help="Meters for distance mode")
    parser.add_argument("--center", type=str, default="45.764,4.835",
                        help="Center lat,lon (default: Lyon)")
    parser.add_argument("--radius-km", type=float, default=5.0, help="Scatter radius in km")
    parser.add_argument("--circuit", default=None, help="Circuit JSON file (overrides random walk)")
    parser.add_argument("--log-level", default="warning")
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    args = build_parser().parse_args(argv)
    lat, lon = args.center.split(",")
    args.center = (float(lat), float(lon))
    return args


def main(argv: list[str] | None = None):
    args = parse_args(argv)

    app_config = AppConfig()
    app_config.logging.level = args.log_level
    _setup_logging(app_config)

    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
