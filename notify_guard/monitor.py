from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from notify_guard import db as dbm
from notify_guard.alerts import ping_fail_message, port_fail_message, queue_alert, service_fail_message
from notify_guard.app_log import build_error_details, write_app_log
from notify_guard.catalog import PortCatalog
from notify_guard.probes import Sleep, probe_reachability, probe_tcp, probe_with_retry
from notify_guard.settings import NotifyGuardSettings


logger = structlog.get_logger(__name__)

PingProbe = Callable[[str], Awaitable[str]]
PortProbe = Callable[[str, int], Awaitable[str]]
AlertSink = Callable[[dict[str, Any], str], Awaitable[None]]


def evaluate_debounce(check_enabled: bool, observed_bad: bool, down_sent: bool) -> tuple[bool, bool]:
    """
    Edge detector for one check. Returns (send_alert, next_down_sent).

    Only the good->bad edge alerts; recovery (or disabling the check) re-arms silently.
    """
    if not check_enabled:
        return False, False
    if observed_bad:
        return (not down_sent), True
    return False, False


@dataclass
class MonitorCycleResult:
    devices: int = 0
    alerts: int = 0
    errors: int = 0
    flags_cleared: int = 0


class _CycleContext:
    def __init__(
        self,
        settings: NotifyGuardSettings,
        *,
        catalog: PortCatalog,
        probe_ping: PingProbe,
        probe_port: PortProbe,
        alert: AlertSink,
        sleep: Sleep,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.probe_ping = probe_ping
        self.probe_port = probe_port
        self.alert = alert
        self.sleep = sleep

    async def ping(self, address: str) -> str:
        return await probe_with_retry(
            lambda: self.probe_ping(address),
            good="online",
            delays=self.settings.probe_retry_delays,
            sleep=self.sleep,
        )

    async def port(self, address: str, port: int) -> str:
        return await probe_with_retry(
            lambda: self.probe_port(address, port),
            good="open",
            delays=self.settings.probe_retry_delays,
            sleep=self.sleep,
        )


async def _check_device(ctx: _CycleContext, device: dict[str, Any]) -> int:
    settings = ctx.settings
    device_id = int(device["id"])
    address = str(device["address"])
    alerts = 0

    state = await asyncio.to_thread(dbm.get_device_alert_state, settings, device_id=device_id)
    saved = (state.ping_down_sent, state.service_down_sent)

    async def _persist_flags() -> None:
        nonlocal saved
        current = (state.ping_down_sent, state.service_down_sent)
        if current != saved:
            await asyncio.to_thread(dbm.save_device_alert_state, settings, state)
            saved = current

    ping_enabled = bool(device.get("monitor_ping"))
    ping_status = "disabled"
    if ping_enabled:
        ping_status = await ctx.ping(address)
        await asyncio.to_thread(
            dbm.record_ping_status_if_changed,
            settings,
            device_id=device_id,
            status=ping_status,
            checked_at_ts=float(time.time()),
        )
    send, state.ping_down_sent = evaluate_debounce(ping_enabled, ping_status == "offline", state.ping_down_sent)
    if send:
        await ctx.alert(device, ping_fail_message(device))
        alerts += 1
        await _persist_flags()

    service_port = ctx.catalog.service_port
    service_enabled = bool(device.get("monitor_service")) and bool(device.get("has_service_tag"))
    service_status = "disabled"
    if service_enabled:
        service_status = await ctx.port(address, service_port)
    send, state.service_down_sent = evaluate_debounce(
        service_enabled, service_status == "closed", state.service_down_sent
    )
    if send:
        label = ctx.catalog.label_for(service_port)
        await ctx.alert(device, service_fail_message(device, port=service_port, label=label))
        alerts += 1
        await _persist_flags()

    await _persist_flags()

    port_flags = await asyncio.to_thread(dbm.get_port_alert_flags, settings, device_id=device_id)
    for row in device.get("ports") or []:
        port = int(row["port"])
        label = str(row.get("label") or ctx.catalog.label_for(port))
        was_sent = port_flags.get(port, False)

        if port == service_port and service_enabled:
            # Same socket as the service check: reuse its observation, alert only once.
            status = service_status
            next_sent = False
            send = False
        else:
            status = await ctx.port(address, port)
            send, next_sent = evaluate_debounce(True, status == "closed", was_sent)

        await asyncio.to_thread(
            dbm.save_port_observation,
            settings,
            device_id=device_id,
            port=port,
            label=label,
            status=status,
            scanned_at_ts=float(time.time()),
        )
        if send:
            await ctx.alert(device, port_fail_message(device, port=port, label=label))
            alerts += 1
        if next_sent != was_sent:
            await asyncio.to_thread(
                dbm.save_port_alert_flag, settings, device_id=device_id, port=port, down_sent=next_sent
            )

    await asyncio.to_thread(
        dbm.update_device_observation,
        settings,
        device_id=device_id,
        ping_status=ping_status,
        service_status=service_status,
        seen_at_ts=float(time.time()),
    )
    return alerts


async def run_monitor_cycle(
    settings: NotifyGuardSettings,
    *,
    catalog: PortCatalog | None = None,
    probe_ping: PingProbe | None = None,
    probe_port: PortProbe | None = None,
    alert: AlertSink | None = None,
    sleep: Sleep = asyncio.sleep,
) -> MonitorCycleResult:
    """
    One monitoring pass over every device with an enabled check.

    A failure on one device is logged and does not stop the others.
    """
    if catalog is None:
        catalog = PortCatalog.from_settings(settings)

    async def _default_ping(address: str) -> str:
        return await probe_reachability(address, timeout_seconds=settings.ping_timeout_seconds)

    async def _default_port(address: str, port: int) -> str:
        return await probe_tcp(address, port, timeout_seconds=settings.tcp_timeout_seconds)

    async def _default_alert(device: dict[str, Any], message: str) -> None:
        await asyncio.to_thread(queue_alert, settings, device_id=int(device["id"]), message=message)

    ctx = _CycleContext(
        settings,
        catalog=catalog,
        probe_ping=probe_ping or _default_ping,
        probe_port=probe_port or _default_port,
        alert=alert or _default_alert,
        sleep=sleep,
    )

    result = MonitorCycleResult()
    result.flags_cleared = await asyncio.to_thread(dbm.clear_stale_alert_flags, settings)
    devices = await asyncio.to_thread(dbm.list_monitored_devices, settings)

    for device in devices:
        result.devices += 1
        try:
            result.alerts += await _check_device(ctx, device)
        except Exception as e:
            result.errors += 1
            logger.exception("monitor_device_failed", device_id=device.get("id"))
            await asyncio.to_thread(
                write_app_log,
                settings,
                level="error",
                scope="monitor",
                message=f"Device check failed: {device.get('name')} ({device.get('address')})",
                details=build_error_details(e),
            )

    logger.info(
        "monitor_cycle_done",
        devices=result.devices,
        alerts=result.alerts,
        errors=result.errors,
        flags_cleared=result.flags_cleared,
    )
    return result


class MonitorScheduler:
    """Single-flight wrapper: a tick that starts while a cycle is still running does nothing."""

    def __init__(
        self,
        settings: NotifyGuardSettings,
        *,
        cycle: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self.settings = settings
        self._cycle = cycle or (lambda: run_monitor_cycle(settings))
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def tick(self) -> bool:
        if self._lock.locked():
            logger.info("monitor_tick_skipped", reason="cycle_in_progress")
            return False

        async with self._lock:
            try:
                await self._cycle()
            except Exception as e:
                logger.exception("monitor_cycle_failed")
                await asyncio.to_thread(
                    write_app_log,
                    self.settings,
                    level="error",
                    scope="monitor",
                    message="Monitor cycle failed",
                    details=build_error_details(e),
                )
        return True
