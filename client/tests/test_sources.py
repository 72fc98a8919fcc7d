"""Tests for the simulated position sources."""

from __future__ import annotations

import asyncio
import json

import pytest

from geotrack.core.errors import SourceError
from geotrack.source.base import WatchOptions
from geotrack.source.simulated import Circuit, CircuitSource, RandomWalkSource, interpolate_point


@pytest.fixture
def circuit(circuit_file) -> Circuit:
    return Circuit.from_json(circuit_file)


def test_circuit_loads(circuit):
    assert circuit.name == "Bellecour loop"
    assert len(circuit.waypoints) == 6
    assert circuit.waypoints[1].wp_type == "stop"


def test_circuit_load_errors(tmp_path):
    with pytest.raises(SourceError):
        Circuit.from_json(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(SourceError):
        Circuit.from_json(bad)

    short = tmp_path / "short.json"
    short.write_text(json.dumps({
        "circuit_name": "dot",
        "circuit_stats": {"total_distance_m": 0},
        "waypoints": [{
            "index": 0, "lat": 0, "lon": 0, "type": "start", "bearing_deg": 0,
            "distance_to_next_m": 0, "suggested_speed_kmh": 0,
        }],
    }))
    with pytest.raises(SourceError, match="at least two"):
        Circuit.from_json(short)


def test_interpolate_point():
    assert interpolate_point(0.0, 0.0, 1.0, 2.0, 0.5) == (0.5, 1.0)


def test_circuit_source_completes_laps(circuit):
    source = CircuitSource(circuit, seed=1)
    fixes = [source._advance(5.0) for _ in range(200)]
    assert source.laps_completed >= 1
    for fix in fixes:
        assert 45.756 < fix.lat < 45.760
        assert 4.829 < fix.lon < 4.834


def test_circuit_source_holds_at_stop(circuit):
    source = CircuitSource(circuit, start_index=1, seed=1)
    fix = source._advance(0.5)
    assert fix.speed_mps == 0.0
    assert (fix.lat, fix.lon) == (45.759, 4.83)


def test_random_walk_is_reproducible():
    a = RandomWalkSource(45.764, 4.835, seed=7)
    b = RandomWalkSource(45.764, 4.835, seed=7)
    for _ in range(20):
        fa, fb = a._advance(1.0), b._advance(1.0)
        assert (fa.lat, fa.lon, fa.speed_mps, fa.heading_deg) == (fb.lat, fb.lon, fb.speed_mps, fb.heading_deg)


def test_random_walk_stays_near_center():
    source = RandomWalkSource(45.764, 4.835, seed=3)
    for _ in range(60):
        fix = source._advance(1.0)
    assert abs(fix.lat - 45.764) < 0.02
    assert abs(fix.lon - 4.835) < 0.03


@pytest.mark.asyncio
async def test_watch_emits_until_cleared():
    source = RandomWalkSource(45.764, 4.835, interval_seconds=0.01, seed=1)
    fixes, errors = [], []
    handle = source.watch(fixes.append, errors.append, WatchOptions())
    await asyncio.sleep(0.05)
    source.clear_watch(handle)
    count = len(fixes)

    await asyncio.sleep(0.03)
    assert count >= 2
    assert len(fixes) == count
    assert errors == []


@pytest.mark.asyncio
async def test_get_once_emits_one_fix():
    source = RandomWalkSource(45.764, 4.835, seed=1)
    fixes = []
    source.get_once(fixes.append, lambda e: None, WatchOptions())
    await asyncio.sleep(0.01)
    assert len(fixes) == 1


@pytest.mark.asyncio
async def test_invalid_fix_reported_as_source_error():
    source = RandomWalkSource(89.9999, 0.0, seed=1)
    errors = []

    def fail(dt):
        raise ValueError("latitude 91 out of range")

    source._advance = fail
    source.get_once(lambda fix: None, errors.append, WatchOptions())
    await asyncio.sleep(0.01)
    assert len(errors) == 1
    assert isinstance(errors[0], SourceError)
