from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
import structlog

from notify_guard import db as dbm
from notify_guard.settings import NotifyGuardSettings
from notify_guard.telegram import TelegramConfig, redact_token, send_telegram_message


logger = structlog.get_logger(__name__)

BACKOFF_TABLE_SECONDS: tuple[int, ...] = (5, 15, 30, 60, 120, 300)
MAX_ERROR_LEN = 500

Backoff = Callable[[int], float]
Sender = Callable[..., Awaitable[tuple]]


def table_backoff(attempts: int, table: tuple[int, ...] = BACKOFF_TABLE_SECONDS) -> float:
    """Delay before the next try after `attempts` failures; plateaus at the last entry."""
    idx = min(max(int(attempts), 1) - 1, len(table) - 1)
    return float(table[idx])


@dataclass
class DeliveryBatchResult:
    sent: int = 0
    failed: int = 0


async def run_delivery_batch(
    settings: NotifyGuardSettings,
    client: httpx.AsyncClient,
    *,
    now_ts: float | None = None,
    backoff: Backoff = table_backoff,
    send: Sender = send_telegram_message,
) -> DeliveryBatchResult:
    now = float(now_ts) if now_ts is not None else float(time.time())
    jobs = await asyncio.to_thread(
        dbm.select_due_notifications, settings, now_ts=now, limit=settings.delivery_batch_size
    )
    result = DeliveryBatchResult()
    for job in jobs:
        job_id = int(job["id"])
        attempts = int(job.get("attempts") or 0) + 1
        config = TelegramConfig(bot_token=str(job["token"]), chat_id=str(job["chat_id"]))
        try:
            ok, error = await send(
                client,
                config,
                str(job["message"]),
                api_base=settings.telegram_api_base,
                timeout=settings.telegram_timeout_seconds,
            )
        except Exception as e:
            ok, error = False, f"{type(e).__name__}: {e}"

        if ok:
            await asyncio.to_thread(
                dbm.mark_notification_sent, settings, notification_id=job_id, attempts=attempts, now_ts=now
            )
            result.sent += 1
            continue

        err = redact_token(str(error or "send_failed"), config.bot_token)[:MAX_ERROR_LEN]
        next_at = now + float(backoff(attempts))
        await asyncio.to_thread(
            dbm.mark_notification_failed,
            settings,
            notification_id=job_id,
            attempts=attempts,
            error=err,
            next_attempt_at_ts=next_at,
            now_ts=now,
        )
        result.failed += 1
        logger.warning("delivery_failed", notification_id=job_id, attempts=attempts, error=err)

    if jobs:
        logger.info("delivery_batch", sent=result.sent, failed=result.failed)
    return result
