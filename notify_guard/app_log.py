from __future__ import annotations

import traceback
from typing import Any

import structlog

from notify_guard import db as dbm
from notify_guard.settings import NotifyGuardSettings


logger = structlog.get_logger(__name__)

MAX_MESSAGE_LEN = 512
MAX_DETAILS_LEN = 4000
TRUNCATED_SUFFIX = "...(truncated)"

_LEVELS = {"info", "warn", "error"}


def _truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[: max(0, max_len - len(TRUNCATED_SUFFIX))] + TRUNCATED_SUFFIX


def build_error_details(exc: BaseException) -> str:
    text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).strip()
    return _truncate(text, MAX_DETAILS_LEN)


def write_app_log(
    settings: NotifyGuardSettings,
    *,
    level: str,
    scope: str,
    message: str,
    details: Any = None,
    path: str | None = None,
    method: str | None = None,
    status: int | None = None,
) -> None:
    """
    Persist an operational log row and mirror it to structlog. Never raises.
    """
    lvl = str(level or "info").strip().lower()
    if lvl not in _LEVELS:
        lvl = "info"
    msg = _truncate(str(message or "").strip() or "-", MAX_MESSAGE_LEN)
    det: str | None = None
    if details is not None:
        det = _truncate(details if isinstance(details, str) else repr(details), MAX_DETAILS_LEN)

    log = logger.error if lvl == "error" else logger.warning if lvl == "warn" else logger.info
    log("app_log", scope=scope, message=msg, path=path, method=method, status=status)

    try:
        dbm.insert_app_log(
            settings,
            level=lvl,
            scope=str(scope or "app"),
            message=msg,
            details=det,
            path=path,
            method=method,
            status=int(status) if status is not None else None,
        )
    except Exception as e:
        logger.warning("app_log_write_failed", scope=scope, error=f"{type(e).__name__}: {e}")
