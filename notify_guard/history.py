from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from notify_guard import db as dbm
from notify_guard.settings import NotifyGuardSettings


PERIOD_SECONDS: dict[str, int] = {
    "24h": 24 * 3600,
    "7d": 7 * 24 * 3600,
    "30d": 30 * 24 * 3600,
}
DEFAULT_PERIOD = "24h"


def normalize_period(period: str | None) -> str:
    p = str(period or "").strip().lower()
    if p == "all" or p in PERIOD_SECONDS:
        return p
    return DEFAULT_PERIOD


def period_start_ts(period: str | None, now_ts: float) -> float | None:
    """Window start for `period`; None means unbounded ("all")."""
    p = normalize_period(period)
    if p == "all":
        return None
    return float(now_ts) - float(PERIOD_SECONDS[p])


@dataclass(frozen=True)
class AvailabilitySlice:
    status: str
    start_ts: float
    end_ts: float | None


@dataclass(frozen=True)
class DeviceHistory:
    period: str
    from_ts: float | None
    now_ts: float
    events: list[dict[str, Any]]
    slices: list[AvailabilitySlice]


def build_availability_slices(
    events: list[dict[str, Any]], from_ts: float | None, now_ts: float
) -> list[AvailabilitySlice]:
    """
    Pair each transition with the next one's timestamp.

    `events` must be oldest-first. With a bounded window the last slice ends at `now_ts`;
    unbounded, it stays open (end_ts=None).
    """
    out: list[AvailabilitySlice] = []
    for i, ev in enumerate(events):
        ts = float(ev["checked_at_ts"])
        start = max(ts, from_ts) if from_ts is not None else ts
        if i + 1 < len(events):
            end: float | None = float(events[i + 1]["checked_at_ts"])
        else:
            end = float(now_ts) if from_ts is not None else None

        if end is not None:
            if end <= start:
                continue
            if from_ts is not None and end <= from_ts:
                continue
        out.append(AvailabilitySlice(status=str(ev["status"]), start_ts=start, end_ts=end))
    return out


def load_device_history(
    settings: NotifyGuardSettings,
    device_id: int,
    period: str | None,
    now_ts: float | None = None,
) -> DeviceHistory:
    now = float(now_ts) if now_ts is not None else float(time.time())
    p = normalize_period(period)
    from_ts = period_start_ts(p, now)

    events = dbm.list_ping_history(
        settings,
        device_id=device_id,
        since_ts=from_ts,
        until_ts=now,
        limit=settings.history_max_events,
    )
    if from_ts is not None:
        prior = dbm.get_last_ping_event_before(settings, device_id=device_id, before_ts=from_ts)
        if prior is not None:
            events = [prior, *events]

    return DeviceHistory(
        period=p,
        from_ts=from_ts,
        now_ts=now,
        events=events,
        slices=build_availability_slices(events, from_ts, now),
    )
