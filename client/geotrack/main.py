"""GeoTrack client — main entry point.

This is the only file that knows about concrete implementations.
It wires together the session, position source, battery source, the
tracking orchestrator and the local monitoring API.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from geotrack.api.monitoring import router as monitoring_router
from geotrack.config import (
    AppConfig,
    ConfigStore,
    SourceConfig,
    app_config_dict,
    load_config,
    load_tracker_config,
)
from geotrack.core.errors import ConfigError, GeoTrackError
from geotrack.core.tracker import TrackingClient
from geotrack.device.battery import PsutilBatterySource
from geotrack.source.base import PositionSource
from geotrack.source.simulated import Circuit, CircuitSource, RandomWalkSource
from geotrack.transport.traccar import TraccarClient

log = structlog.get_logger()

# Module-level singletons (set during startup)
_tracker: TrackingClient | None = None
_config: AppConfig | None = None


def get_tracker() -> TrackingClient:
    assert _tracker is not None, "Client not initialized"
    return _tracker


def get_config() -> AppConfig:
    assert _config is not None, "Client not initialized"
    return _config


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def build_source(config: SourceConfig) -> PositionSource:
    if config.kind == "circuit":
        if not config.circuit:
            raise ConfigError("source.circuit is required for the circuit source")
        return CircuitSource(Circuit.from_json(config.circuit), interval_seconds=config.interval_seconds)
    if config.kind == "random":
        return RandomWalkSource(
            config.center_lat, config.center_lon, interval_seconds=config.interval_seconds,
        )
    raise ConfigError(f"unknown source kind {config.kind!r}")


def build_tracker(config: AppConfig) -> TrackingClient:
    """Create one device session from the persisted tracking configuration."""
    store = ConfigStore(config.store.path)
    session = TraccarClient(load_tracker_config(store))
    return TrackingClient(
        session,
        build_source(config.source),
        battery=PsutilBatterySource(),
        store=store,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """API startup and shutdown. Reuses the CLI's client when one is running."""
    global _tracker, _config

    owns_tracker = _tracker is None
    if owns_tracker:
        _config = load_config()
        _setup_logging(_config)
        _tracker = build_tracker(_config)
        await _tracker.open()

    log.info("api_started", host=get_config().api.host, port=get_config().api.port)

    yield

    if owns_tracker:
        await _tracker.aclose()
        _tracker = None
    log.info("api_stopped")


app = FastAPI(
    title="GeoTrack client",
    description="Location reporting client for Traccar servers",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(monitoring_router)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GeoTrack location reporting client")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--print-config", action="store_true", help="Print resolved configuration and exit.")
    parser.add_argument("--username", default=None, help="Server account (defaults to the stored one)")
    parser.add_argument("--password", default=None, help="Server password (defaults to the stored one)")
    parser.add_argument("--token", default=None, help="Use a bearer token instead of a password session")
    parser.add_argument("--source", choices=["random", "circuit"], default=None, help="Simulated position source")
    parser.add_argument("--circuit", default=None, help="Circuit JSON file for --source circuit")
    parser.add_argument("--serve-api", action="store_true", help="Serve the local monitoring API.")
    parser.add_argument("--no-track", action="store_true", help="Authenticate only; start tracking via the API.")
    return parser


async def _run_client(args: argparse.Namespace, config: AppConfig) -> int:
    global _tracker, _config

    async with build_tracker(config) as tracker:
        _tracker, _config = tracker, config

        if args.token:
            ok = tracker.use_token(args.token)
        else:
            ok = await tracker.authenticate(args.username, args.password)

        if not ok:
            log.error("authentication_failed", error=tracker.state.error)
            if not args.serve_api:
                return 1
        elif not args.no_track:
            tracker.start_tracking()

        try:
            if args.serve_api:
                import uvicorn

                server = uvicorn.Server(uvicorn.Config(
                    app,
                    host=config.api.host,
                    port=config.api.port,
                    log_level=config.logging.level.lower(),
                ))
                await server.serve()
            else:
                # Run until interrupted
                await asyncio.Event().wait()
        finally:
            _tracker = None

    return 0


def run(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.source:
        config.source.kind = args.source
    if args.circuit:
        config.source.circuit = args.circuit

    _setup_logging(config)

    if args.print_config:
        tracker_config = load_tracker_config(ConfigStore(config.store.path)).to_dict()
        if "password" in tracker_config:
            tracker_config["password"] = "***"
        print(json.dumps({"app": app_config_dict(config), "tracker": tracker_config}, indent=2))
        return 0

    try:
        return asyncio.run(_run_client(args, config))
    except KeyboardInterrupt:
        log.info("client_interrupted")
        return 0
    except GeoTrackError as e:
        log.error("client_failed", error=str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(run())
