from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_float_csv(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    raw = os.getenv(name)
    if raw is None:
        return tuple(default)
    out: list[float] = []
    for part in str(raw).split(","):
        item = part.strip()
        if not item:
            continue
        try:
            out.append(max(0.0, float(item)))
        except Exception:
            return tuple(default)
    return tuple(out)


@dataclass(frozen=True)
class NotifyGuardSettings:
    db_path: str = field(default_factory=lambda: _env_str("NOTIFY_GUARD_DB_PATH", "./data/notify-guard.db"))
    # Optional YAML file with a `known_ports:` list; the built-in catalog is used when empty.
    known_ports_path: str = field(default_factory=lambda: os.getenv("NOTIFY_GUARD_KNOWN_PORTS_PATH", "").strip())
    # The always-known service port backing devices.has_service_tag / monitor_service.
    service_port: int = field(default_factory=lambda: _env_int("NOTIFY_GUARD_SERVICE_PORT", 502))

    log_level: str = field(default_factory=lambda: _env_str("NOTIFY_GUARD_LOG_LEVEL", "INFO").upper())

    # Background workers. Tests build apps with workers disabled and drive cycles directly.
    workers_enabled: bool = field(default_factory=lambda: _env_bool("NOTIFY_GUARD_WORKERS_ENABLED", True))
    monitor_interval_seconds: int = field(default_factory=lambda: _env_int("NOTIFY_GUARD_MONITOR_INTERVAL_SECONDS", 30))
    delivery_interval_seconds: int = field(default_factory=lambda: _env_int("NOTIFY_GUARD_DELIVERY_INTERVAL_SECONDS", 5))
    delivery_batch_size: int = field(default_factory=lambda: _env_int("NOTIFY_GUARD_DELIVERY_BATCH_SIZE", 20))

    # Probing.
    ping_timeout_seconds: float = field(default_factory=lambda: _env_float("NOTIFY_GUARD_PING_TIMEOUT_SECONDS", 1.0))
    tcp_timeout_seconds: float = field(default_factory=lambda: _env_float("NOTIFY_GUARD_TCP_TIMEOUT_SECONDS", 0.9))
    probe_retry_delays: tuple[float, ...] = field(
        default_factory=lambda: _env_float_csv("NOTIFY_GUARD_PROBE_RETRY_DELAYS", (5.0, 10.0, 15.0))
    )

    # Telegram delivery.
    telegram_api_base: str = field(
        default_factory=lambda: _env_str("NOTIFY_GUARD_TELEGRAM_API_BASE", "https://api.telegram.org").rstrip("/")
    )
    telegram_timeout_seconds: float = field(default_factory=lambda: _env_float("NOTIFY_GUARD_TELEGRAM_TIMEOUT_SECONDS", 15.0))

    # Read path.
    history_max_events: int = field(default_factory=lambda: _env_int("NOTIFY_GUARD_HISTORY_MAX_EVENTS", 5000))
