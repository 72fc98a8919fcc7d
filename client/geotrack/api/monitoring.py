"""Local status and control endpoints.

Dashboards read the client state here and drive the client's commands
(authenticate, start, stop, send now, update config, disconnect).
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from geotrack.core.errors import ConfigError

router = APIRouter(prefix="/api/v1")

_VERSION = "0.1.0"
PASSWORD_MASK = "***"


async def _json_body(request: Request) -> dict | None:
    try:
        body = json.loads(await request.body() or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _invalid_json() -> JSONResponse:
    return JSONResponse(content={"ok": False, "error": "invalid JSON"}, status_code=400)


def _public_config(config) -> dict:
    data = config.to_dict()
    if "password" in data:
        data["password"] = PASSWORD_MASK
    return data


@router.get("/health")
async def health() -> dict:
    """Basic health check."""
    from geotrack.main import get_tracker

    tracker = get_tracker()
    return {
        "status": "ok",
        "version": _VERSION,
        "client_status": tracker.state.status.value,
        "socket_connected": bool(tracker.session.channel and tracker.session.channel.connected),
        "queue_depth": tracker.session.queue_depth,
    }


@router.get("/state")
async def state() -> dict:
    """Full client state snapshot: flags, positions, motion, battery, counters."""
    from geotrack.main import get_tracker

    return get_tracker().snapshot()


@router.get("/config")
async def get_config() -> dict:
    from geotrack.main import get_tracker

    return _public_config(get_tracker().config)


@router.patch("/config")
async def patch_config(request: Request) -> JSONResponse:
    """Partial update using the persisted (camelCase) keys."""
    from dataclasses import fields

    from geotrack.config import TraccarConfiguration
    from geotrack.main import get_tracker

    body = await _json_body(request)
    if body is None:
        return _invalid_json()

    # GET /config masks the password; echoing the mask back keeps the current one.
    if body.get("password") == PASSWORD_MASK:
        del body["password"]

    tracker = get_tracker()
    try:
        # Validate the merged record before touching the live session.
        merged = TraccarConfiguration.from_dict({**tracker.config.to_dict(), **body})
        changes = {
            f.name: getattr(merged, f.name)
            for f in fields(merged)
            if getattr(merged, f.name) != getattr(tracker.config, f.name)
        }
        config = tracker.update_config(**changes)
    except ConfigError as e:
        return JSONResponse(content={"ok": False, "error": str(e)}, status_code=422)
    return JSONResponse(content=_public_config(config))


@router.post("/session")
async def open_session(request: Request) -> JSONResponse:
    """Authenticate against the tracking server."""
    from geotrack.main import get_tracker

    body = await _json_body(request)
    if body is None:
        return _invalid_json()

    tracker = get_tracker()
    ok = await tracker.authenticate(body.get("username"), body.get("password"))
    return JSONResponse(
        content={"ok": ok, "error": tracker.state.error, "status": tracker.state.status.value},
        status_code=200 if ok else 401,
    )


@router.post("/tracking/start")
async def start_tracking() -> JSONResponse:
    from geotrack.main import get_tracker

    tracker = get_tracker()
    ok = tracker.start_tracking()
    return JSONResponse(
        content={"ok": ok, "status": tracker.state.status.value},
        status_code=200 if ok else 409,
    )


@router.post("/tracking/stop")
async def stop_tracking() -> dict:
    from geotrack.main import get_tracker

    tracker = get_tracker()
    tracker.stop_tracking()
    return {"ok": True, "status": tracker.state.status.value}


@router.post("/positions/send")
async def send_now() -> JSONResponse:
    """Send the current position immediately."""
    from geotrack.main import get_tracker

    tracker = get_tracker()
    ok = await tracker.send_now()
    return JSONResponse(
        content={"ok": ok, "sent_count": tracker.state.sent_count, "error": tracker.state.error},
        status_code=200 if ok else 502,
    )


@router.post("/disconnect")
async def disconnect() -> dict:
    from geotrack.main import get_tracker

    tracker = get_tracker()
    tracker.disconnect()
    return {"ok": True, "status": tracker.state.status.value}
