"""Tests for the local monitoring API."""

from __future__ import annotations

import pytest

import geotrack.main as main_module
from geotrack.config import ConfigStore, SourceConfig
from geotrack.core.errors import ConfigError
from geotrack.source.simulated import CircuitSource, RandomWalkSource

CREDENTIALS = {"username": "admin@example.com", "password": "secret"}


@pytest.mark.asyncio
async def test_health(api_client):
    resp = await api_client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["client_status"] == "idle"
    assert data["socket_connected"] is False
    assert data["queue_depth"] == 0


@pytest.mark.asyncio
async def test_state_initial(api_client):
    resp = await api_client.get("/api/v1/state")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "idle"
    assert data["is_authenticated"] is False
    assert data["current_position"] is None


@pytest.mark.asyncio
async def test_session_ok(api_client):
    resp = await api_client.post("/api/v1/session", json=CREDENTIALS)
    assert resp.status_code == 200
    assert resp.json()["ok"] is True

    data = (await api_client.get("/api/v1/state")).json()
    assert data["is_authenticated"] is True
    assert data["is_connected"] is True


@pytest.mark.asyncio
async def test_session_rejected(api_client):
    resp = await api_client.post("/api/v1/session", json={**CREDENTIALS, "password": "nope"})
    assert resp.status_code == 401
    data = resp.json()
    assert data["ok"] is False
    assert data["status"] == "error"


@pytest.mark.asyncio
async def test_session_invalid_json(api_client):
    resp = await api_client.post(
        "/api/v1/session", content=b"{oops", headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_tracking_start_requires_session(api_client):
    resp = await api_client.post("/api/v1/tracking/start")
    assert resp.status_code == 409

    await api_client.post("/api/v1/session", json=CREDENTIALS)
    resp = await api_client.post("/api/v1/tracking/start")
    assert resp.status_code == 200
    assert resp.json()["status"] == "tracking"

    resp = await api_client.post("/api/v1/tracking/stop")
    assert resp.status_code == 200
    assert resp.json()["status"] == "idle"


@pytest.mark.asyncio
async def test_send_now(api_client, source, fake_server, make_fix):
    await api_client.post("/api/v1/session", json=CREDENTIALS)
    await api_client.post("/api/v1/tracking/start")
    source.emit(make_fix())
    await main_module.get_tracker().wait_until_processed()

    resp = await api_client.post("/api/v1/positions/send")
    assert resp.status_code == 200
    assert resp.json()["sent_count"] == 2
    assert len(fake_server.singles) == 2


@pytest.mark.asyncio
async def test_send_now_failure(api_client, source, fake_server, make_fix):
    await api_client.post("/api/v1/session", json=CREDENTIALS)
    await api_client.post("/api/v1/tracking/start")
    source.emit(make_fix())
    await main_module.get_tracker().wait_until_processed()

    fake_server.fail_positions = True
    resp = await api_client.post("/api/v1/positions/send")
    assert resp.status_code == 502
    assert "503" in resp.json()["error"]


@pytest.mark.asyncio
async def test_config_masks_password(api_client):
    await api_client.post("/api/v1/session", json=CREDENTIALS)
    data = (await api_client.get("/api/v1/config")).json()
    assert data["username"] == "admin@example.com"
    assert data["password"] == "***"
    assert data["deviceId"] == "dev-001"


@pytest.mark.asyncio
async def test_patch_config(api_client, store):
    resp = await api_client.patch("/api/v1/config", json={"trackingMode": "distance", "distanceThreshold": 25})
    assert resp.status_code == 200
    data = resp.json()
    assert data["trackingMode"] == "distance"
    assert data["distanceThreshold"] == 25

    tracker = main_module.get_tracker()
    assert tracker.config.distance_threshold == 25
    assert ConfigStore(store.path).get("traccar_config")["trackingMode"] == "distance"


@pytest.mark.asyncio
async def test_patch_config_invalid(api_client):
    resp = await api_client.patch("/api/v1/config", json={"batchSize": 0})
    assert resp.status_code == 422
    assert resp.json()["ok"] is False
    assert main_module.get_tracker().config.batch_size == 10

    resp = await api_client.patch("/api/v1/config", json={"trackingMode": "teleport"})
    assert resp.status_code == 422


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"port": "abc"}, {"offlineMode": "false"}])
async def test_patch_config_wrong_type(api_client, body):
    resp = await api_client.patch("/api/v1/config", json=body)
    assert resp.status_code == 422
    assert resp.json()["ok"] is False

    config = main_module.get_tracker().config
    assert config.port == 8082
    assert config.offline_mode is True


@pytest.mark.asyncio
async def test_patch_config_keeps_password_when_mask_echoed(api_client):
    await api_client.post("/api/v1/session", json=CREDENTIALS)
    echoed = (await api_client.get("/api/v1/config")).json()
    echoed["timeInterval"] = 10

    resp = await api_client.patch("/api/v1/config", json=echoed)
    assert resp.status_code == 200
    config = main_module.get_tracker().config
    assert config.password == "secret"
    assert config.time_interval == 10


@pytest.mark.asyncio
async def test_disconnect(api_client):
    await api_client.post("/api/v1/session", json=CREDENTIALS)
    await api_client.post("/api/v1/tracking/start")
    resp = await api_client.post("/api/v1/disconnect")
    assert resp.status_code == 200

    data = (await api_client.get("/api/v1/state")).json()
    assert data["is_authenticated"] is False
    assert data["is_tracking"] is False
    assert data["status"] == "idle"


def test_build_source(circuit_file):
    assert isinstance(main_module.build_source(SourceConfig(kind="random")), RandomWalkSource)

    circuit = SourceConfig(kind="circuit", circuit=str(circuit_file))
    assert isinstance(main_module.build_source(circuit), CircuitSource)

    with pytest.raises(ConfigError):
        main_module.build_source(SourceConfig(kind="circuit"))
    with pytest.raises(ConfigError):
        main_module.build_source(SourceConfig(kind="gps"))


def test_print_config_masks_password(tmp_path, monkeypatch, capsys):
    store = ConfigStore(tmp_path / "store.yaml")
    store.set("traccar_config", {"deviceId": "abc", "username": "u", "password": "hunter2"})
    monkeypatch.setenv("GEOTRACK_STORE_PATH", str(store.path))

    assert main_module.run(["--config", str(tmp_path / "none.yaml"), "--print-config"]) == 0
    out = capsys.readouterr().out
    assert "hunter2" not in out
    assert '"deviceId": "abc"' in out
