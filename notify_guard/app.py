from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from notify_guard import db as dbm
from notify_guard import ports as portsm
from notify_guard.app_log import build_error_details, write_app_log
from notify_guard.catalog import PortCatalog
from notify_guard.errors import NotifyGuardError
from notify_guard.history import load_device_history, normalize_period
from notify_guard.inbound import queue_inbound_message
from notify_guard.schema import CustomPortScanRequest, InboundMessageRequest, PatchPortRequest
from notify_guard.settings import NotifyGuardSettings
from notify_guard.workers import BackgroundWorkers


logger = structlog.get_logger(__name__)


def _iso(ts: Any) -> str | None:
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except Exception:
        return None


def _clamp_limit(value: Any, default: int = 50) -> int:
    try:
        n = int(value)
    except Exception:
        n = default
    return max(1, min(n, 200))


def _port_out(row: dict[str, Any]) -> dict[str, Any]:
    out = dict(row)
    out["last_scanned_at"] = _iso(row.get("last_scanned_at_ts"))
    return out


def _notification_out(row: dict[str, Any]) -> dict[str, Any]:
    out = dict(row)
    out.pop("token", None)
    out["created_at"] = _iso(row.get("created_at_ts"))
    out["sent_at"] = _iso(row.get("sent_at_ts"))
    out["next_attempt_at"] = _iso(row.get("next_attempt_at_ts"))
    return out


def _app_log_out(row: dict[str, Any]) -> dict[str, Any]:
    out = dict(row)
    out["created_at"] = _iso(row.get("created_at_ts"))
    return out


def create_app(settings: NotifyGuardSettings | None = None) -> FastAPI:
    app = FastAPI(title="notify-guard", version="0.1.0")
    app.state.settings = settings or NotifyGuardSettings()
    app.state.catalog = PortCatalog.from_settings(app.state.settings)
    app.state.workers = BackgroundWorkers(app.state.settings)

    @app.on_event("startup")
    async def _startup() -> None:
        s: NotifyGuardSettings = app.state.settings
        await asyncio.to_thread(dbm.ensure_schema, s)
        migrated = await asyncio.to_thread(dbm.migrate_legacy_bot_chats, s)
        if migrated > 0:
            logger.info("legacy_bot_chats_migrated", count=migrated)
        if s.workers_enabled:
            await app.state.workers.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.workers.stop()

    @app.exception_handler(NotifyGuardError)
    async def _domain_error(_req: Request, exc: NotifyGuardError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.middleware("http")
    async def _log_server_errors(req: Request, call_next):
        is_api = req.url.path.startswith("/api/")
        try:
            response = await call_next(req)
        except Exception as e:
            if not is_api:
                raise
            logger.exception("http_unhandled_error", path=req.url.path, method=req.method)
            await asyncio.to_thread(
                write_app_log,
                app.state.settings,
                level="error",
                scope="http",
                message=f"Unhandled error: {type(e).__name__}: {e}",
                details=build_error_details(e),
                path=req.url.path,
                method=req.method,
                status=500,
            )
            return JSONResponse(status_code=500, content={"detail": "internal_error"})

        if is_api and response.status_code >= 500:
            await asyncio.to_thread(
                write_app_log,
                app.state.settings,
                level="error",
                scope="http",
                message=f"HTTP {response.status_code} {req.method} {req.url.path}",
                path=req.url.path,
                method=req.method,
                status=response.status_code,
            )
        return response

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/api/devices/{device_id}/ports")
    async def api_list_ports(device_id: int) -> dict[str, Any]:
        rows = await asyncio.to_thread(portsm.list_ports, app.state.settings, device_id)
        return {"ok": True, "ports": [_port_out(r) for r in rows]}

    @app.post("/api/devices/{device_id}/ports/scan")
    async def api_scan_ports(device_id: int) -> dict[str, Any]:
        res = await portsm.scan_known_ports(app.state.settings, device_id, catalog=app.state.catalog)
        return {
            "ok": True,
            "scanned_at": _iso(res.scanned_at_ts),
            "open_ports": res.open_ports,
            "ports": [_port_out(r) for r in res.ports],
        }

    @app.post("/api/devices/{device_id}/ports/scan-custom")
    async def api_scan_custom_port(device_id: int, req: CustomPortScanRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        res = await portsm.scan_custom_port(app.state.settings, device_id, req.port, catalog=app.state.catalog)
        return {
            "ok": True,
            "scanned_at": _iso(res.scanned_at_ts),
            "open_ports": res.open_ports,
            "ports": [_port_out(r) for r in res.ports],
        }

    @app.patch("/api/devices/{device_id}/ports/{port}")
    async def api_patch_port(device_id: int, port: int, req: PatchPortRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        rows = await asyncio.to_thread(
            portsm.set_port_monitoring,
            app.state.settings,
            device_id,
            port,
            req.monitor_enabled,
            catalog=app.state.catalog,
        )
        return {"ok": True, "ports": [_port_out(r) for r in rows]}

    @app.delete("/api/devices/{device_id}/ports/{port}")
    async def api_delete_port(device_id: int, port: int) -> dict[str, Any]:
        rows = await asyncio.to_thread(
            portsm.delete_port, app.state.settings, device_id, port, catalog=app.state.catalog
        )
        return {"ok": True, "ports": [_port_out(r) for r in rows]}

    @app.get("/api/devices/{device_id}/history")
    async def api_device_history(device_id: int, period: str = "24h") -> dict[str, Any]:
        s: NotifyGuardSettings = app.state.settings
        device = await asyncio.to_thread(dbm.get_device, s, device_id=device_id)
        if device is None:
            return {
                "ok": True,
                "exists": False,
                "period": normalize_period(period),
                "device": None,
                "history": [],
                "slices": [],
            }
        hist = await asyncio.to_thread(load_device_history, s, device_id, period)
        return {
            "ok": True,
            "exists": True,
            "period": hist.period,
            "from": _iso(hist.from_ts),
            "now": _iso(hist.now_ts),
            "device": {
                "id": device["id"],
                "name": device["name"],
                "address": device["address"],
                "last_ping_status": device["last_ping_status"],
            },
            "history": [
                {"id": ev["id"], "status": ev["status"], "checked_at": _iso(ev["checked_at_ts"])}
                for ev in hist.events
            ],
            "slices": [
                {
                    "status": sl.status,
                    "start": _iso(sl.start_ts),
                    "end": _iso(sl.end_ts),
                    "start_ts": sl.start_ts,
                    "end_ts": sl.end_ts,
                }
                for sl in hist.slices
            ],
        }

    @app.post("/api/inbound/messages", status_code=202)
    async def api_inbound_message(req: InboundMessageRequest | None = None) -> dict[str, Any]:
        body = req or InboundMessageRequest()
        res = await asyncio.to_thread(
            queue_inbound_message,
            app.state.settings,
            bot_name=body.bot_name,
            chat_id=body.chat_id,
            text=body.text,
            idempotency_key=body.idempotency_key,
            source=body.source,
        )
        return {
            "ok": True,
            "bot_id": res.bot_id,
            "bot_name": res.bot_name,
            "queued": res.queued,
            "deduplicated": res.deduplicated,
            "notification_ids": res.notification_ids,
        }

    @app.get("/api/logs")
    async def api_logs(limit: int = 50, app_limit: int = 50) -> dict[str, Any]:
        s: NotifyGuardSettings = app.state.settings
        logs = await asyncio.to_thread(dbm.list_notifications, s, limit=_clamp_limit(limit))
        app_logs = await asyncio.to_thread(dbm.list_app_logs, s, limit=_clamp_limit(app_limit))
        return {
            "ok": True,
            "logs": [_notification_out(r) for r in logs],
            "app_logs": [_app_log_out(r) for r in app_logs],
        }

    return app
