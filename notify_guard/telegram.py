from __future__ import annotations

from dataclasses import dataclass

import httpx


TELEGRAM_API_BASE = "https://api.telegram.org"


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str


def redact_token(text: str, token: str) -> str:
    msg = str(text or "")
    if token:
        msg = msg.replace(token, "<redacted>")
    return msg


async def send_telegram_message(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    api_base: str = TELEGRAM_API_BASE,
    timeout: float = 15.0,
) -> tuple[bool, str | None]:
    """
    POST sendMessage. Returns (ok, error); the error string never contains the bot token.
    """
    url = f"{api_base.rstrip('/')}/bot{config.bot_token}/sendMessage"
    payload = {"chat_id": config.chat_id, "text": text}
    try:
        resp = await client.post(url, json=payload, timeout=timeout)
    except Exception as e:
        return False, redact_token(f"{type(e).__name__}: {e}", config.bot_token)

    if 200 <= resp.status_code < 300:
        return True, None

    description = ""
    try:
        data = resp.json()
        if isinstance(data, dict):
            description = str(data.get("description") or "")
    except Exception:
        description = ""
    if not description:
        description = (resp.text or "").strip()
    msg = f"HTTP {resp.status_code}"
    if description:
        msg = f"{msg}: {description}"
    return False, redact_token(msg, config.bot_token)
