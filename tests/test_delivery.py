from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from notify_guard import db as dbm
from notify_guard.delivery import run_delivery_batch, table_backoff
from notify_guard.settings import NotifyGuardSettings


GOOD_TOKEN = "123:good"
BAD_TOKEN = "456:revoked"


def _settings(tmp_path: Path, **overrides) -> NotifyGuardSettings:
    kwargs = {
        "db_path": str(tmp_path / "notify-guard.db"),
        "workers_enabled": False,
        "telegram_api_base": "https://telegram.test",
    }
    kwargs.update(overrides)
    return NotifyGuardSettings(**kwargs)


def _enqueue(settings: NotifyGuardSettings, *, token: str, chat_id: str, message: str) -> int:
    bot_id = dbm.create_bot(settings, name=f"bot-{chat_id}", token=token)
    (job_id,) = dbm.insert_notifications(
        settings, [dbm.NewNotification(bot_id=bot_id, token=token, chat_id=chat_id, message=message)]
    )
    return job_id


def _handler(requests: list[httpx.Request]):
    def _handle(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if BAD_TOKEN in request.url.path:
            return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    return _handle


def test_table_backoff_plateaus() -> None:
    assert [table_backoff(n) for n in range(1, 9)] == [5, 15, 30, 60, 120, 300, 300, 300]
    assert table_backoff(0) == 5


@pytest.mark.asyncio
async def test_batch_marks_success_and_failure_independently(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    ok_id = _enqueue(settings, token=GOOD_TOKEN, chat_id="42", message="hello")
    bad_id = _enqueue(settings, token=BAD_TOKEN, chat_id="43", message="nope")

    requests: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler(requests))) as client:
        res = await run_delivery_batch(settings, client, now_ts=1000.0)

    assert (res.sent, res.failed) == (1, 1)
    assert requests[0].url.host == "telegram.test"
    assert requests[0].url.path == f"/bot{GOOD_TOKEN}/sendMessage"
    assert json.loads(requests[0].content) == {"chat_id": "42", "text": "hello"}

    sent = dbm.get_notification(settings, notification_id=ok_id)
    assert sent is not None
    assert sent["status"] == "sent"
    assert sent["attempts"] == 1
    assert sent["sent_at_ts"] == 1000.0
    assert sent["last_error"] is None
    assert sent["next_attempt_at_ts"] is None

    failed = dbm.get_notification(settings, notification_id=bad_id)
    assert failed is not None
    assert failed["status"] == "failed"
    assert failed["attempts"] == 1
    assert failed["next_attempt_at_ts"] == 1005.0
    assert failed["last_error"] == "HTTP 401: Unauthorized"


@pytest.mark.asyncio
async def test_failed_job_waits_for_backoff_then_retries(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    bad_id = _enqueue(settings, token=BAD_TOKEN, chat_id="43", message="nope")

    requests: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler(requests))) as client:
        await run_delivery_batch(settings, client, now_ts=1000.0)
        early = await run_delivery_batch(settings, client, now_ts=1004.0)
        assert (early.sent, early.failed) == (0, 0)
        again = await run_delivery_batch(settings, client, now_ts=1005.0)
        assert again.failed == 1

    job = dbm.get_notification(settings, notification_id=bad_id)
    assert job is not None
    assert job["attempts"] == 2
    assert job["next_attempt_at_ts"] == 1020.0
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_transport_error_is_recorded_without_token(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    job_id = _enqueue(settings, token=GOOD_TOKEN, chat_id="42", message="hello")

    def _explode(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"connection refused for {request.url}", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_explode)) as client:
        res = await run_delivery_batch(settings, client, now_ts=50.0, backoff=lambda attempts: 1.0)

    assert res.failed == 1
    job = dbm.get_notification(settings, notification_id=job_id)
    assert job is not None
    assert job["status"] == "failed"
    assert job["next_attempt_at_ts"] == 51.0
    assert GOOD_TOKEN not in job["last_error"]
    assert "<redacted>" in job["last_error"]
    assert len(job["last_error"]) <= 500


@pytest.mark.asyncio
async def test_batch_respects_limit_and_id_order(tmp_path: Path) -> None:
    settings = _settings(tmp_path, delivery_batch_size=2)
    ids = [_enqueue(settings, token=GOOD_TOKEN, chat_id=str(100 + i), message=f"m{i}") for i in range(3)]

    requests: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler(requests))) as client:
        res = await run_delivery_batch(settings, client, now_ts=10.0)

    assert res.sent == 2
    assert [json.loads(r.content)["text"] for r in requests] == ["m0", "m1"]
    last = dbm.get_notification(settings, notification_id=ids[2])
    assert last is not None and last["status"] == "pending"


@pytest.mark.asyncio
async def test_sent_jobs_are_not_picked_again(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _enqueue(settings, token=GOOD_TOKEN, chat_id="42", message="hello")

    requests: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler(requests))) as client:
        first = await run_delivery_batch(settings, client, now_ts=10.0)
        second = await run_delivery_batch(settings, client, now_ts=20.0)

    assert first.sent == 1
    assert (second.sent, second.failed) == (0, 0)
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_sender_error_text_is_redacted(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    job_id = _enqueue(settings, token=GOOD_TOKEN, chat_id="42", message="hello")

    async def _leaky_send(_client, config, _text, **_kwargs):
        return False, f"upstream rejected bot{config.bot_token} " + "x" * 1000

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler([]))) as client:
        res = await run_delivery_batch(settings, client, now_ts=10.0, send=_leaky_send)

    assert res.failed == 1
    job = dbm.get_notification(settings, notification_id=job_id)
    assert job is not None
    assert job["last_error"].startswith("upstream rejected bot<redacted> ")
    assert GOOD_TOKEN not in job["last_error"]
    assert len(job["last_error"]) == 500
