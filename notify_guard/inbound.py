from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from notify_guard import db as dbm
from notify_guard.errors import InboundNotFoundError, InboundValidationError
from notify_guard.settings import NotifyGuardSettings


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InboundResult:
    bot_id: int | None
    bot_name: str | None
    queued: int
    deduplicated: bool
    notification_ids: list[int] = field(default_factory=list)


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def queue_inbound_message(
    settings: NotifyGuardSettings,
    *,
    bot_name: Any,
    chat_id: Any = None,
    text: Any,
    idempotency_key: Any,
    source: Any = None,
) -> InboundResult:
    """
    Enqueue an externally submitted message at most once per idempotency key.

    Raises InboundValidationError (400) on missing fields and InboundNotFoundError (404) when
    the bot or its destination cannot be resolved.
    """
    name = _clean(bot_name)
    body = _clean(text)
    key = _clean(idempotency_key)
    if not name:
        raise InboundValidationError("bot_name is required")
    if not body:
        raise InboundValidationError("text is required")
    if not key:
        raise InboundValidationError("idempotency_key is required")

    src = _clean(source)
    message = f"[{src}] {body}" if src else body
    job_source = f"rest:{src.lower()}" if src else "rest"

    outcome = dbm.enqueue_inbound(
        settings,
        bot_name=name,
        chat_id=_clean(chat_id) or None,
        message=message,
        idempotency_key=key,
        source=job_source,
    )

    if outcome.status == "bot_not_found":
        raise InboundNotFoundError("bot_not_found")
    if outcome.status == "chat_not_found":
        raise InboundNotFoundError("chat_not_found")
    if outcome.status == "no_active_chats":
        raise InboundNotFoundError("no_active_chats")

    deduplicated = outcome.status == "deduplicated"
    logger.info(
        "inbound_message",
        bot_id=outcome.bot_id,
        idempotency_key=key,
        deduplicated=deduplicated,
        jobs=len(outcome.notification_ids),
    )
    return InboundResult(
        bot_id=outcome.bot_id,
        bot_name=outcome.bot_name,
        queued=0 if deduplicated else len(outcome.notification_ids),
        deduplicated=deduplicated,
        notification_ids=list(outcome.notification_ids),
    )
