from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from notify_guard.settings import NotifyGuardSettings


SCHEMA_VERSION = 2


def _utc_ts() -> float:
    return float(time.time())


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL lets the delivery worker read while a monitor cycle writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except Exception:
        pass
    return conn


def ensure_schema(settings: NotifyGuardSettings) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    if cur == 1:
        _apply_v2(conn)
        conn.execute("UPDATE schema_meta SET v=? WHERE k='version'", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    try:
        rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    except Exception:
        return False
    for r in rows:
        try:
            if str(r["name"]) == str(column):
                return True
        except Exception:
            continue
    return False


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS bots (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          token TEXT NOT NULL,
          chat_id TEXT NOT NULL DEFAULT '', -- legacy single-chat column, see migrate_legacy_bot_chats
          is_active INTEGER NOT NULL DEFAULT 1
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS bot_chats (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          bot_id INTEGER NOT NULL REFERENCES bots(id) ON DELETE CASCADE,
          chat_id TEXT NOT NULL,
          is_active INTEGER NOT NULL DEFAULT 1
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS devices (
          id INTEGER PRIMARY KEY,
          name TEXT NOT NULL,
          address TEXT NOT NULL,
          has_service_tag INTEGER NOT NULL DEFAULT 0,
          monitor_ping INTEGER NOT NULL DEFAULT 0,
          monitor_service INTEGER NOT NULL DEFAULT 0,
          last_ping_status TEXT NOT NULL DEFAULT 'unknown',
          last_service_status TEXT NOT NULL DEFAULT 'unknown',
          last_seen_at_ts REAL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS device_notifications (
          device_id INTEGER NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
          bot_id INTEGER NOT NULL REFERENCES bots(id) ON DELETE CASCADE,
          PRIMARY KEY (device_id, bot_id)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS device_ports (
          device_id INTEGER NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
          port INTEGER NOT NULL,
          label TEXT NOT NULL,
          monitor_enabled INTEGER NOT NULL DEFAULT 0,
          last_status TEXT NOT NULL DEFAULT 'unknown', -- open|closed|unknown
          last_scanned_at_ts REAL,
          PRIMARY KEY (device_id, port)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          bot_id INTEGER NOT NULL,
          token TEXT NOT NULL,
          chat_id TEXT NOT NULL,
          message TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'pending', -- pending|failed|sent
          attempts INTEGER NOT NULL DEFAULT 0,
          last_error TEXT,
          next_attempt_at_ts REAL,
          created_at_ts REAL NOT NULL,
          sent_at_ts REAL,
          updated_at_ts REAL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS app_logs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          level TEXT NOT NULL, -- info|warn|error
          scope TEXT NOT NULL,
          message TEXT NOT NULL,
          details TEXT,
          path TEXT,
          method TEXT,
          status INTEGER,
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS device_ping_history (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          device_id INTEGER NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
          status TEXT NOT NULL, -- online|offline
          checked_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS device_alert_state (
          device_id INTEGER PRIMARY KEY REFERENCES devices(id) ON DELETE CASCADE,
          ping_down_sent INTEGER NOT NULL DEFAULT 0,
          service_down_sent INTEGER NOT NULL DEFAULT 0,
          updated_at_ts REAL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_bot_chats_bot ON bot_chats(bot_id, is_active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_due ON notifications(status, next_attempt_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_ping_history_device ON device_ping_history(device_id, checked_at_ts);")


def _apply_v2(conn: sqlite3.Connection) -> None:
    """
    v2 adds inbound idempotency keys on notifications and per-port debounce state.
    """
    if not _column_exists(conn, "notifications", "idempotency_key"):
        conn.execute("ALTER TABLE notifications ADD COLUMN idempotency_key TEXT;")
    if not _column_exists(conn, "notifications", "source"):
        conn.execute("ALTER TABLE notifications ADD COLUMN source TEXT NOT NULL DEFAULT 'alert';")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS port_alert_state (
          device_id INTEGER NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
          port INTEGER NOT NULL,
          down_sent INTEGER NOT NULL DEFAULT 0,
          updated_at_ts REAL,
          PRIMARY KEY (device_id, port)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_idem ON notifications(idempotency_key);")


def _device_dict(row: sqlite3.Row) -> dict[str, Any]:
    out = dict(row)
    for key in ("has_service_tag", "monitor_ping", "monitor_service"):
        out[key] = bool(int(out.get(key) or 0))
    return out


def _port_dict(row: sqlite3.Row) -> dict[str, Any]:
    out = dict(row)
    out["monitor_enabled"] = bool(int(out.get("monitor_enabled") or 0))
    return out


# -----------------
# Inventory (owned by the inventory collaborator; kept minimal here)
# -----------------
def upsert_device(
    settings: NotifyGuardSettings,
    *,
    device_id: int,
    name: str,
    address: str,
    has_service_tag: bool = False,
    monitor_ping: bool = False,
    monitor_service: bool = False,
) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            INSERT INTO devices (id, name, address, has_service_tag, monitor_ping, monitor_service)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              name=excluded.name,
              address=excluded.address,
              has_service_tag=excluded.has_service_tag,
              monitor_ping=excluded.monitor_ping,
              monitor_service=excluded.monitor_service
            """,
            (
                int(device_id),
                name.strip(),
                address.strip(),
                1 if has_service_tag else 0,
                1 if monitor_ping else 0,
                # A device without the service tag can never have the service check on.
                1 if (monitor_service and has_service_tag) else 0,
            ),
        )
        row = conn.execute("SELECT * FROM devices WHERE id=?", (int(device_id),)).fetchone()
        return _device_dict(row)
    finally:
        conn.close()


def get_device(settings: NotifyGuardSettings, *, device_id: int) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM devices WHERE id=?", (int(device_id),)).fetchone()
        return _device_dict(row) if row else None
    finally:
        conn.close()


def create_bot(settings: NotifyGuardSettings, *, name: str, token: str, chat_id: str = "") -> int:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            "INSERT INTO bots (name, token, chat_id, is_active) VALUES (?, ?, ?, 1)",
            (name.strip(), token.strip(), str(chat_id or "").strip()),
        )
        return int(cur.lastrowid)
    finally:
        conn.close()


def add_bot_chat(settings: NotifyGuardSettings, *, bot_id: int, chat_id: str, is_active: bool = True) -> int:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            "INSERT INTO bot_chats (bot_id, chat_id, is_active) VALUES (?, ?, ?)",
            (int(bot_id), str(chat_id).strip(), 1 if is_active else 0),
        )
        return int(cur.lastrowid)
    finally:
        conn.close()


def assign_bots(settings: NotifyGuardSettings, *, device_id: int, bot_ids: Iterable[int]) -> None:
    """Replace the device's bot assignments."""
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            conn.execute("DELETE FROM device_notifications WHERE device_id=?", (int(device_id),))
            for bot_id in sorted({int(b) for b in bot_ids}):
                conn.execute(
                    "INSERT INTO device_notifications (device_id, bot_id) VALUES (?, ?)",
                    (int(device_id), bot_id),
                )
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
    finally:
        conn.close()


def migrate_legacy_bot_chats(settings: NotifyGuardSettings) -> int:
    """
    Copy the legacy single `bots.chat_id` value into `bot_chats` (once per bot/chat pair).
    """
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute("SELECT id, chat_id, is_active FROM bots ORDER BY id ASC").fetchall()
        created = 0
        for r in rows:
            chat_id = str(r["chat_id"] or "").strip()
            if not chat_id:
                continue
            exists = conn.execute(
                "SELECT 1 FROM bot_chats WHERE bot_id=? AND chat_id=?",
                (int(r["id"]), chat_id),
            ).fetchone()
            if exists:
                continue
            conn.execute(
                "INSERT INTO bot_chats (bot_id, chat_id, is_active) VALUES (?, ?, ?)",
                (int(r["id"]), chat_id, 1 if int(r["is_active"] or 0) else 0),
            )
            created += 1
        return created
    finally:
        conn.close()


# -----------------
# Monitoring: devices, ports, history, debounce state
# -----------------
def list_monitored_devices(settings: NotifyGuardSettings) -> list[dict[str, Any]]:
    """
    Devices with at least one enabled check, each with its enabled port rows under "ports".
    """
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT d.*
            FROM devices d
            WHERE
              d.monitor_ping=1
              OR (d.monitor_service=1 AND d.has_service_tag=1)
              OR EXISTS (SELECT 1 FROM device_ports p WHERE p.device_id=d.id AND p.monitor_enabled=1)
            ORDER BY d.id ASC
            """
        ).fetchall()
        out: list[dict[str, Any]] = []
        for r in rows:
            item = _device_dict(r)
            ports = conn.execute(
                "SELECT * FROM device_ports WHERE device_id=? AND monitor_enabled=1 ORDER BY port ASC",
                (int(r["id"]),),
            ).fetchall()
            item["ports"] = [_port_dict(p) for p in ports]
            out.append(item)
        return out
    finally:
        conn.close()


def update_device_observation(
    settings: NotifyGuardSettings,
    *,
    device_id: int,
    ping_status: str,
    service_status: str,
    seen_at_ts: float,
) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            "UPDATE devices SET last_ping_status=?, last_service_status=?, last_seen_at_ts=? WHERE id=?",
            (str(ping_status), str(service_status), float(seen_at_ts), int(device_id)),
        )
    finally:
        conn.close()


def set_device_monitor_service(settings: NotifyGuardSettings, *, device_id: int, enabled: bool) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            "UPDATE devices SET monitor_service=? WHERE id=? AND has_service_tag=1",
            (1 if enabled else 0, int(device_id)),
        )
    finally:
        conn.close()


def record_ping_status_if_changed(
    settings: NotifyGuardSettings,
    *,
    device_id: int,
    status: str,
    checked_at_ts: float | None = None,
) -> bool:
    """
    Append a transition event only when `status` differs from the device's latest event.
    Returns True when a row was written.
    """
    if status not in {"online", "offline"}:
        raise ValueError(f"invalid ping status: {status!r}")
    ts = float(checked_at_ts) if checked_at_ts is not None else _utc_ts()

    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            last = conn.execute(
                "SELECT status FROM device_ping_history WHERE device_id=? ORDER BY checked_at_ts DESC, id DESC LIMIT 1",
                (int(device_id),),
            ).fetchone()
            if last is not None and str(last["status"]) == status:
                conn.execute("COMMIT;")
                return False
            conn.execute(
                "INSERT INTO device_ping_history (device_id, status, checked_at_ts) VALUES (?, ?, ?)",
                (int(device_id), status, ts),
            )
            conn.execute("COMMIT;")
            return True
        except Exception:
            conn.execute("ROLLBACK;")
            raise
    finally:
        conn.close()


def list_ping_history(
    settings: NotifyGuardSettings,
    *,
    device_id: int,
    since_ts: float | None = None,
    until_ts: float | None = None,
    limit: int = 5000,
) -> list[dict[str, Any]]:
    """Transition events oldest-first."""
    limit = max(1, int(limit))
    clauses = ["device_id=?"]
    params: list[Any] = [int(device_id)]
    if since_ts is not None:
        clauses.append("checked_at_ts >= ?")
        params.append(float(since_ts))
    if until_ts is not None:
        clauses.append("checked_at_ts <= ?")
        params.append(float(until_ts))
    params.append(limit)

    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            f"""
            SELECT id, device_id, status, checked_at_ts
            FROM device_ping_history
            WHERE {" AND ".join(clauses)}
            ORDER BY checked_at_ts ASC, id ASC
            LIMIT ?
            """,
            tuple(params),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def get_last_ping_event_before(
    settings: NotifyGuardSettings, *, device_id: int, before_ts: float
) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            """
            SELECT id, device_id, status, checked_at_ts
            FROM device_ping_history
            WHERE device_id=? AND checked_at_ts < ?
            ORDER BY checked_at_ts DESC, id DESC
            LIMIT 1
            """,
            (int(device_id), float(before_ts)),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


@dataclass
class DeviceAlertState:
    device_id: int
    ping_down_sent: bool = False
    service_down_sent: bool = False


def get_device_alert_state(settings: NotifyGuardSettings, *, device_id: int) -> DeviceAlertState:
    """Returns the stored flags, or a fresh unsaved all-clear state."""
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT ping_down_sent, service_down_sent FROM device_alert_state WHERE device_id=?",
            (int(device_id),),
        ).fetchone()
        if not row:
            return DeviceAlertState(device_id=int(device_id))
        return DeviceAlertState(
            device_id=int(device_id),
            ping_down_sent=bool(int(row["ping_down_sent"] or 0)),
            service_down_sent=bool(int(row["service_down_sent"] or 0)),
        )
    finally:
        conn.close()


def save_device_alert_state(settings: NotifyGuardSettings, state: DeviceAlertState) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            INSERT INTO device_alert_state (device_id, ping_down_sent, service_down_sent, updated_at_ts)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(device_id) DO UPDATE SET
              ping_down_sent=excluded.ping_down_sent,
              service_down_sent=excluded.service_down_sent,
              updated_at_ts=excluded.updated_at_ts
            """,
            (
                int(state.device_id),
                1 if state.ping_down_sent else 0,
                1 if state.service_down_sent else 0,
                _utc_ts(),
            ),
        )
    finally:
        conn.close()


def get_port_alert_flags(settings: NotifyGuardSettings, *, device_id: int) -> dict[int, bool]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT port, down_sent FROM port_alert_state WHERE device_id=?",
            (int(device_id),),
        ).fetchall()
        return {int(r["port"]): bool(int(r["down_sent"] or 0)) for r in rows}
    finally:
        conn.close()


def save_port_alert_flag(settings: NotifyGuardSettings, *, device_id: int, port: int, down_sent: bool) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            INSERT INTO port_alert_state (device_id, port, down_sent, updated_at_ts)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(device_id, port) DO UPDATE SET
              down_sent=excluded.down_sent,
              updated_at_ts=excluded.updated_at_ts
            """,
            (int(device_id), int(port), 1 if down_sent else 0, _utc_ts()),
        )
    finally:
        conn.close()


def clear_stale_alert_flags(settings: NotifyGuardSettings) -> int:
    """
    Clear debounce flags whose check is no longer enabled, so re-enabling starts armed.
    Returns the number of rows changed.
    """
    now = _utc_ts()
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            changed = 0
            cur = conn.execute(
                """
                UPDATE port_alert_state
                SET down_sent=0, updated_at_ts=?
                WHERE down_sent=1 AND NOT EXISTS (
                  SELECT 1 FROM device_ports p
                  WHERE p.device_id=port_alert_state.device_id
                    AND p.port=port_alert_state.port
                    AND p.monitor_enabled=1
                )
                """,
                (now,),
            )
            changed += int(cur.rowcount or 0)
            cur = conn.execute(
                """
                UPDATE device_alert_state
                SET ping_down_sent=0, updated_at_ts=?
                WHERE ping_down_sent=1 AND device_id IN (SELECT id FROM devices WHERE monitor_ping=0)
                """,
                (now,),
            )
            changed += int(cur.rowcount or 0)
            cur = conn.execute(
                """
                UPDATE device_alert_state
                SET service_down_sent=0, updated_at_ts=?
                WHERE service_down_sent=1 AND device_id IN (
                  SELECT id FROM devices WHERE monitor_service=0 OR has_service_tag=0
                )
                """,
                (now,),
            )
            changed += int(cur.rowcount or 0)
            conn.execute("COMMIT;")
            return changed
        except Exception:
            conn.execute("ROLLBACK;")
            raise
    finally:
        conn.close()


def list_device_ports(settings: NotifyGuardSettings, *, device_id: int) -> list[dict[str, Any]]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM device_ports WHERE device_id=? ORDER BY port ASC",
            (int(device_id),),
        ).fetchall()
        return [_port_dict(r) for r in rows]
    finally:
        conn.close()


def get_device_port(settings: NotifyGuardSettings, *, device_id: int, port: int) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT * FROM device_ports WHERE device_id=? AND port=?",
            (int(device_id), int(port)),
        ).fetchone()
        return _port_dict(row) if row else None
    finally:
        conn.close()


def ensure_port_rows(settings: NotifyGuardSettings, *, device_id: int, ports: Iterable[tuple[int, str]]) -> int:
    """Insert missing (port, label) rows disabled with unknown status. Returns rows created."""
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        created = 0
        for port, label in ports:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO device_ports (device_id, port, label, monitor_enabled, last_status, last_scanned_at_ts)
                VALUES (?, ?, ?, 0, 'unknown', NULL)
                """,
                (int(device_id), int(port), str(label)),
            )
            created += int(cur.rowcount or 0)
        return created
    finally:
        conn.close()


def save_port_observation(
    settings: NotifyGuardSettings,
    *,
    device_id: int,
    port: int,
    label: str,
    status: str,
    scanned_at_ts: float,
) -> None:
    """Upsert the latest observation for a port row (creates the row disabled if missing)."""
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            INSERT INTO device_ports (device_id, port, label, monitor_enabled, last_status, last_scanned_at_ts)
            VALUES (?, ?, ?, 0, ?, ?)
            ON CONFLICT(device_id, port) DO UPDATE SET
              last_status=excluded.last_status,
              last_scanned_at_ts=excluded.last_scanned_at_ts
            """,
            (int(device_id), int(port), str(label), str(status), float(scanned_at_ts)),
        )
    finally:
        conn.close()


def set_port_monitor_enabled(
    settings: NotifyGuardSettings,
    *,
    device_id: int,
    port: int,
    label: str,
    enabled: bool,
) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            INSERT INTO device_ports (device_id, port, label, monitor_enabled, last_status, last_scanned_at_ts)
            VALUES (?, ?, ?, ?, 'unknown', NULL)
            ON CONFLICT(device_id, port) DO UPDATE SET monitor_enabled=excluded.monitor_enabled
            """,
            (int(device_id), int(port), str(label), 1 if enabled else 0),
        )
    finally:
        conn.close()


def delete_device_port(settings: NotifyGuardSettings, *, device_id: int, port: int) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            cur = conn.execute(
                "DELETE FROM device_ports WHERE device_id=? AND port=?",
                (int(device_id), int(port)),
            )
            conn.execute(
                "DELETE FROM port_alert_state WHERE device_id=? AND port=?",
                (int(device_id), int(port)),
            )
            conn.execute("COMMIT;")
            return int(cur.rowcount or 0) > 0
        except Exception:
            conn.execute("ROLLBACK;")
            raise
    finally:
        conn.close()


def prune_custom_ports(settings: NotifyGuardSettings, *, device_id: int, known_ports: Iterable[int]) -> int:
    """Drop ad-hoc port rows that are neither monitored nor last seen open."""
    keep = sorted({int(p) for p in known_ports})
    placeholders = ",".join("?" for _ in keep) or "NULL"
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            f"""
            DELETE FROM device_ports
            WHERE device_id=?
              AND monitor_enabled=0
              AND last_status != 'open'
              AND port NOT IN ({placeholders})
            """,
            (int(device_id), *keep),
        )
        return int(cur.rowcount or 0)
    finally:
        conn.close()


# -----------------
# Delivery queue
# -----------------
@dataclass(frozen=True)
class NewNotification:
    bot_id: int
    token: str
    chat_id: str
    message: str
    idempotency_key: str | None = None
    source: str = "alert"


def _insert_notifications_conn(conn: sqlite3.Connection, items: list[NewNotification], now: float) -> list[int]:
    ids: list[int] = []
    for item in items:
        cur = conn.execute(
            """
            INSERT INTO notifications (
              bot_id, token, chat_id, message, status, attempts, last_error, next_attempt_at_ts,
              created_at_ts, sent_at_ts, updated_at_ts, idempotency_key, source
            ) VALUES (?, ?, ?, ?, 'pending', 0, NULL, NULL, ?, NULL, ?, ?, ?)
            """,
            (
                int(item.bot_id),
                item.token,
                item.chat_id,
                item.message,
                now,
                now,
                item.idempotency_key,
                item.source,
            ),
        )
        ids.append(int(cur.lastrowid))
    return ids


def insert_notifications(settings: NotifyGuardSettings, items: list[NewNotification]) -> list[int]:
    if not items:
        return []
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            ids = _insert_notifications_conn(conn, items, _utc_ts())
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
        return ids
    finally:
        conn.close()


def list_alert_targets(settings: NotifyGuardSettings, *, device_id: int) -> list[dict[str, Any]]:
    """
    Active chats of every bot assigned to the device, as {bot_id, token, chat_id} rows
    (not yet de-duplicated), oldest chat first.
    """
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT b.id AS bot_id, b.token AS token, c.chat_id AS chat_id
            FROM device_notifications m
            JOIN bots b ON b.id=m.bot_id
            JOIN bot_chats c ON c.bot_id=b.id
            WHERE m.device_id=? AND c.is_active=1
            ORDER BY b.id ASC, c.id ASC
            """,
            (int(device_id),),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def select_due_notifications(settings: NotifyGuardSettings, *, now_ts: float, limit: int) -> list[dict[str, Any]]:
    limit = max(1, int(limit))
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT *
            FROM notifications
            WHERE status IN ('pending', 'failed')
              AND (next_attempt_at_ts IS NULL OR next_attempt_at_ts <= ?)
            ORDER BY id ASC
            LIMIT ?
            """,
            (float(now_ts), limit),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def mark_notification_sent(settings: NotifyGuardSettings, *, notification_id: int, attempts: int, now_ts: float) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            UPDATE notifications
            SET status='sent', sent_at_ts=?, attempts=?, last_error=NULL, next_attempt_at_ts=NULL, updated_at_ts=?
            WHERE id=?
            """,
            (float(now_ts), int(attempts), float(now_ts), int(notification_id)),
        )
    finally:
        conn.close()


def mark_notification_failed(
    settings: NotifyGuardSettings,
    *,
    notification_id: int,
    attempts: int,
    error: str,
    next_attempt_at_ts: float,
    now_ts: float,
) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            UPDATE notifications
            SET status='failed', attempts=?, last_error=?, next_attempt_at_ts=?, updated_at_ts=?
            WHERE id=?
            """,
            (int(attempts), str(error), float(next_attempt_at_ts), float(now_ts), int(notification_id)),
        )
    finally:
        conn.close()


def get_notification(settings: NotifyGuardSettings, *, notification_id: int) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM notifications WHERE id=?", (int(notification_id),)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_notifications(settings: NotifyGuardSettings, *, limit: int = 50) -> list[dict[str, Any]]:
    """Newest first; the bot token is never returned."""
    limit = max(1, min(int(limit), 200))
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT id, bot_id, chat_id, message, status, attempts, last_error, next_attempt_at_ts,
                   created_at_ts, sent_at_ts, idempotency_key, source
            FROM notifications
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


# -----------------
# Inbound (idempotent enqueue)
# -----------------
@dataclass(frozen=True)
class InboundOutcome:
    status: str  # queued|deduplicated|bot_not_found|chat_not_found|no_active_chats
    bot_id: int | None
    bot_name: str | None
    notification_ids: list[int]


def enqueue_inbound(
    settings: NotifyGuardSettings,
    *,
    bot_name: str,
    chat_id: str | None,
    message: str,
    idempotency_key: str,
    source: str,
) -> InboundOutcome:
    """
    Dedup check, target resolution and insert run under one write lock so two concurrent
    submissions with the same key cannot both enqueue.
    """
    now = _utc_ts()
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            existing = conn.execute(
                "SELECT id, bot_id FROM notifications WHERE idempotency_key=? ORDER BY id ASC",
                (idempotency_key,),
            ).fetchall()
            if existing:
                bot_id = int(existing[0]["bot_id"])
                bot_name = _bot_name_conn(conn, bot_id)
                conn.execute("COMMIT;")
                return InboundOutcome(
                    status="deduplicated",
                    bot_id=bot_id,
                    bot_name=bot_name,
                    notification_ids=[int(r["id"]) for r in existing],
                )

            bot = conn.execute(
                "SELECT id, name, token FROM bots WHERE name=? ORDER BY id ASC LIMIT 1",
                (bot_name,),
            ).fetchone()
            if not bot:
                conn.execute("ROLLBACK;")
                return InboundOutcome(status="bot_not_found", bot_id=None, bot_name=None, notification_ids=[])

            bot_id = int(bot["id"])
            params: list[Any] = [bot_id]
            sql = "SELECT chat_id FROM bot_chats WHERE bot_id=? AND is_active=1"
            if chat_id:
                sql += " AND chat_id=?"
                params.append(chat_id)
            sql += " ORDER BY id ASC"
            chats = conn.execute(sql, tuple(params)).fetchall()
            if not chats:
                conn.execute("ROLLBACK;")
                return InboundOutcome(
                    status="chat_not_found" if chat_id else "no_active_chats",
                    bot_id=bot_id,
                    bot_name=str(bot["name"]),
                    notification_ids=[],
                )

            seen: set[str] = set()
            items: list[NewNotification] = []
            for c in chats:
                cid = str(c["chat_id"])
                if cid in seen:
                    continue
                seen.add(cid)
                items.append(
                    NewNotification(
                        bot_id=bot_id,
                        token=str(bot["token"]),
                        chat_id=cid,
                        message=message,
                        idempotency_key=idempotency_key,
                        source=source,
                    )
                )
            ids = _insert_notifications_conn(conn, items, now)
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise

        return InboundOutcome(status="queued", bot_id=bot_id, bot_name=str(bot["name"]), notification_ids=ids)
    finally:
        conn.close()


def _bot_name_conn(conn: sqlite3.Connection, bot_id: int) -> str | None:
    row = conn.execute("SELECT name FROM bots WHERE id=?", (int(bot_id),)).fetchone()
    return str(row["name"]) if row else None


# -----------------
# Operational log
# -----------------
def insert_app_log(
    settings: NotifyGuardSettings,
    *,
    level: str,
    scope: str,
    message: str,
    details: str | None = None,
    path: str | None = None,
    method: str | None = None,
    status: int | None = None,
) -> int:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            """
            INSERT INTO app_logs (level, scope, message, details, path, method, status, created_at_ts)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (level, scope, message, details, path, method, status, _utc_ts()),
        )
        return int(cur.lastrowid)
    finally:
        conn.close()


def list_app_logs(settings: NotifyGuardSettings, *, limit: int = 50) -> list[dict[str, Any]]:
    limit = max(1, min(int(limit), 200))
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute("SELECT * FROM app_logs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()
