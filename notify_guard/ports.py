from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from notify_guard import db as dbm
from notify_guard.catalog import PortCatalog
from notify_guard.errors import DeviceNotFoundError, PortPolicyError
from notify_guard.probes import probe_tcp
from notify_guard.settings import NotifyGuardSettings


logger = structlog.get_logger(__name__)

PortProbe = Callable[[str, int], Awaitable[str]]


@dataclass(frozen=True)
class PortScanResult:
    scanned_at_ts: float
    open_ports: list[int]
    ports: list[dict[str, Any]]


def _require_device(settings: NotifyGuardSettings, device_id: int) -> dict[str, Any]:
    device = dbm.get_device(settings, device_id=device_id)
    if device is None:
        raise DeviceNotFoundError(device_id)
    return device


def _validate_port(port: int) -> int:
    p = int(port)
    if not (1 <= p <= 65535):
        raise PortPolicyError("invalid_port")
    return p


def list_ports(settings: NotifyGuardSettings, device_id: int) -> list[dict[str, Any]]:
    _require_device(settings, device_id)
    return dbm.list_device_ports(settings, device_id=device_id)


async def scan_known_ports(
    settings: NotifyGuardSettings,
    device_id: int,
    *,
    catalog: PortCatalog | None = None,
    probe_port: PortProbe | None = None,
) -> PortScanResult:
    """
    Probe every catalog port once (concurrently, no retries) and persist the results.
    """
    catalog = catalog or PortCatalog.from_settings(settings)
    device = await asyncio.to_thread(_require_device, settings, device_id)
    address = str(device["address"])

    async def _default_probe(addr: str, port: int) -> str:
        return await probe_tcp(addr, port, timeout_seconds=settings.tcp_timeout_seconds)

    probe = probe_port or _default_probe
    known = catalog.ports
    await asyncio.to_thread(
        dbm.ensure_port_rows, settings, device_id=device_id, ports=[(k.port, k.label) for k in known]
    )

    statuses = await asyncio.gather(*(probe(address, k.port) for k in known))
    scanned_at = float(time.time())
    open_ports: list[int] = []
    for k, status in zip(known, statuses):
        await asyncio.to_thread(
            dbm.save_port_observation,
            settings,
            device_id=device_id,
            port=k.port,
            label=k.label,
            status=status,
            scanned_at_ts=scanned_at,
        )
        if status == "open":
            open_ports.append(k.port)

    pruned = await asyncio.to_thread(
        dbm.prune_custom_ports, settings, device_id=device_id, known_ports=[k.port for k in known]
    )
    ports = await asyncio.to_thread(dbm.list_device_ports, settings, device_id=device_id)
    logger.info("port_scan", device_id=device_id, open_ports=open_ports, pruned=pruned)
    return PortScanResult(scanned_at_ts=scanned_at, open_ports=open_ports, ports=ports)


async def scan_custom_port(
    settings: NotifyGuardSettings,
    device_id: int,
    port: int,
    *,
    catalog: PortCatalog | None = None,
    probe_port: PortProbe | None = None,
) -> PortScanResult:
    """
    Probe a single port once. A closed port that is neither in the catalog nor already
    tracked leaves no row behind.
    """
    catalog = catalog or PortCatalog.from_settings(settings)
    p = _validate_port(port)
    device = await asyncio.to_thread(_require_device, settings, device_id)

    if probe_port is None:
        status = await probe_tcp(str(device["address"]), p, timeout_seconds=settings.tcp_timeout_seconds)
    else:
        status = await probe_port(str(device["address"]), p)
    scanned_at = float(time.time())

    existing = await asyncio.to_thread(dbm.get_device_port, settings, device_id=device_id, port=p)
    if status == "open" or catalog.is_known(p) or existing is not None:
        label = str(existing["label"]) if existing else catalog.label_for(p)
        await asyncio.to_thread(
            dbm.save_port_observation,
            settings,
            device_id=device_id,
            port=p,
            label=label,
            status=status,
            scanned_at_ts=scanned_at,
        )

    ports = await asyncio.to_thread(dbm.list_device_ports, settings, device_id=device_id)
    return PortScanResult(scanned_at_ts=scanned_at, open_ports=[p] if status == "open" else [], ports=ports)


def set_port_monitoring(
    settings: NotifyGuardSettings,
    device_id: int,
    port: int,
    enabled: bool,
    *,
    catalog: PortCatalog,
) -> list[dict[str, Any]]:
    device = _require_device(settings, device_id)
    p = _validate_port(port)
    existing = dbm.get_device_port(settings, device_id=device_id, port=p)
    label = str(existing["label"]) if existing else catalog.label_for(p)
    dbm.set_port_monitor_enabled(settings, device_id=device_id, port=p, label=label, enabled=bool(enabled))

    if p == catalog.service_port and device.get("has_service_tag"):
        dbm.set_device_monitor_service(settings, device_id=device_id, enabled=bool(enabled))

    logger.info("port_monitoring_set", device_id=device_id, port=p, enabled=bool(enabled))
    return dbm.list_device_ports(settings, device_id=device_id)


def delete_port(
    settings: NotifyGuardSettings,
    device_id: int,
    port: int,
    *,
    catalog: PortCatalog,
) -> list[dict[str, Any]]:
    _require_device(settings, device_id)
    p = _validate_port(port)
    if catalog.is_known(p):
        raise PortPolicyError("known_port_cannot_be_deleted")
    existing = dbm.get_device_port(settings, device_id=device_id, port=p)
    if existing is not None and existing.get("monitor_enabled"):
        raise PortPolicyError("monitored_port_cannot_be_deleted")
    dbm.delete_device_port(settings, device_id=device_id, port=p)
    return dbm.list_device_ports(settings, device_id=device_id)
