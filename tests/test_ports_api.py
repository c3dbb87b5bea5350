from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from notify_guard import db as dbm
from notify_guard import ports as portsm
from notify_guard.app import create_app
from notify_guard.settings import NotifyGuardSettings


OPEN_PORTS = {22, 502, 8080}


def _bootstrap(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[TestClient, NotifyGuardSettings]:
    settings = NotifyGuardSettings(db_path=str(tmp_path / "notify-guard.db"), workers_enabled=False)
    dbm.upsert_device(settings, device_id=7, name="meter", address="10.0.0.70", has_service_tag=True)

    async def _fake_probe(_address: str, port: int, *, timeout_seconds: float = 0.9) -> str:
        return "open" if port in OPEN_PORTS else "closed"

    monkeypatch.setattr(portsm, "probe_tcp", _fake_probe)
    return TestClient(create_app(settings)), settings


def _ports(body: dict) -> dict[int, dict]:
    return {int(p["port"]): p for p in body["ports"]}


def test_scan_populates_known_ports(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _settings = _bootstrap(tmp_path, monkeypatch)
    with client:
        r = client.get("/api/devices/7/ports")
        assert r.status_code == 200
        assert r.json()["ports"] == []

        r = client.post("/api/devices/7/ports/scan")
        assert r.status_code == 200
        body = r.json()
        assert body["open_ports"] == [22, 502]
        assert body["scanned_at"].endswith("Z")
        rows = _ports(body)
        assert sorted(rows) == [21, 22, 80, 443, 502, 1883, 3671, 8883]
        assert rows[22]["last_status"] == "open"
        assert rows[80]["last_status"] == "closed"
        assert rows[502]["label"] == "Modbus TCP"
        assert all(not p["monitor_enabled"] for p in rows.values())


def test_custom_scan_persists_only_open_ports(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _settings = _bootstrap(tmp_path, monkeypatch)
    with client:
        r = client.post("/api/devices/7/ports/scan-custom", json={"port": 9999})
        assert r.status_code == 200
        assert r.json()["open_ports"] == []
        assert 9999 not in _ports(r.json())

        r = client.post("/api/devices/7/ports/scan-custom", json={"port": 8080})
        assert r.status_code == 200
        body = r.json()
        assert body["open_ports"] == [8080]
        assert _ports(body)[8080]["label"] == "TCP 8080"

        r = client.post("/api/devices/7/ports/scan-custom", json={"port": 70000})
        assert r.status_code == 422


def test_monitored_and_known_ports_cannot_be_deleted(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _settings = _bootstrap(tmp_path, monkeypatch)
    with client:
        client.post("/api/devices/7/ports/scan")
        client.post("/api/devices/7/ports/scan-custom", json={"port": 8080})

        r = client.patch("/api/devices/7/ports/8080", json={"monitorEnabled": True})
        assert r.status_code == 200
        assert _ports(r.json())[8080]["monitor_enabled"] is True

        r = client.delete("/api/devices/7/ports/8080")
        assert r.status_code == 400
        assert r.json()["detail"] == "monitored_port_cannot_be_deleted"

        r = client.patch("/api/devices/7/ports/8080", json={"monitor_enabled": False})
        assert r.status_code == 200
        r = client.delete("/api/devices/7/ports/8080")
        assert r.status_code == 200
        assert 8080 not in _ports(r.json())

        r = client.patch("/api/devices/7/ports/22", json={"monitorEnabled": True})
        assert r.status_code == 200
        r = client.patch("/api/devices/7/ports/22", json={"monitorEnabled": False})
        assert r.status_code == 200
        r = client.delete("/api/devices/7/ports/22")
        assert r.status_code == 400
        assert r.json()["detail"] == "known_port_cannot_be_deleted"


def test_patch_creates_missing_custom_row(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, settings = _bootstrap(tmp_path, monkeypatch)
    with client:
        r = client.patch("/api/devices/7/ports/12345", json={"monitorEnabled": True})
        assert r.status_code == 200
        row = _ports(r.json())[12345]
        assert row["monitor_enabled"] is True
        assert row["last_status"] == "unknown"

    devices = dbm.list_monitored_devices(settings)
    assert [d["id"] for d in devices] == [7]
    assert [p["port"] for p in devices[0]["ports"]] == [12345]


def test_service_port_toggles_service_check(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, settings = _bootstrap(tmp_path, monkeypatch)
    with client:
        r = client.patch("/api/devices/7/ports/502", json={"monitorEnabled": True})
        assert r.status_code == 200
        device = dbm.get_device(settings, device_id=7)
        assert device is not None and device["monitor_service"] is True

        r = client.patch("/api/devices/7/ports/502", json={"monitorEnabled": False})
        assert r.status_code == 200
        device = dbm.get_device(settings, device_id=7)
        assert device is not None and device["monitor_service"] is False


def test_rescan_prunes_idle_custom_rows(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _settings = _bootstrap(tmp_path, monkeypatch)
    with client:
        client.patch("/api/devices/7/ports/12345", json={"monitorEnabled": True})
        client.patch("/api/devices/7/ports/12345", json={"monitorEnabled": False})
        client.post("/api/devices/7/ports/scan-custom", json={"port": 8080})

        r = client.post("/api/devices/7/ports/scan")
        rows = _ports(r.json())
        assert 12345 not in rows
        assert 8080 in rows


def test_unknown_device_is_404(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _settings = _bootstrap(tmp_path, monkeypatch)
    with client:
        assert client.get("/api/devices/99/ports").status_code == 404
        r = client.post("/api/devices/99/ports/scan")
        assert r.status_code == 404
        assert r.json()["detail"] == "device_not_found"
        assert client.patch("/api/devices/99/ports/80", json={"monitorEnabled": True}).status_code == 404
        assert client.delete("/api/devices/99/ports/8080").status_code == 404
