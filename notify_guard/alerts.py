from __future__ import annotations

from typing import Any

import structlog

from notify_guard import db as dbm
from notify_guard.settings import NotifyGuardSettings


logger = structlog.get_logger(__name__)


def ping_fail_message(device: dict[str, Any]) -> str:
    return f"🚨 Ping fail: {device['name']} ({device['address']}) is unreachable"


def service_fail_message(device: dict[str, Any], *, port: int, label: str) -> str:
    return f"⚠️ {label} fail: {device['name']} ({device['address']}) TCP/{int(port)} is closed"


def port_fail_message(device: dict[str, Any], *, port: int, label: str) -> str:
    return f"⚠️ Port fail: {device['name']} ({device['address']}) TCP/{int(port)} ({label}) is closed"


def queue_alert(settings: NotifyGuardSettings, *, device_id: int, message: str) -> list[int]:
    """
    Fan one alert out to every active chat of every bot assigned to the device.

    One pending job per distinct (bot, chat) pair. Returns the new job ids (empty when
    nobody is subscribed).
    """
    targets = dbm.list_alert_targets(settings, device_id=device_id)
    seen: set[tuple[int, str]] = set()
    items: list[dbm.NewNotification] = []
    for t in targets:
        key = (int(t["bot_id"]), str(t["chat_id"]))
        if key in seen:
            continue
        seen.add(key)
        items.append(
            dbm.NewNotification(bot_id=key[0], token=str(t["token"]), chat_id=key[1], message=message, source="alert")
        )
    if not items:
        logger.info("alert_no_targets", device_id=device_id)
        return []
    ids = dbm.insert_notifications(settings, items)
    logger.info("alert_queued", device_id=device_id, jobs=len(ids))
    return ids
