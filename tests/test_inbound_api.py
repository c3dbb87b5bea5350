from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from notify_guard import db as dbm
from notify_guard.app import create_app
from notify_guard.errors import InboundValidationError
from notify_guard.inbound import queue_inbound_message
from notify_guard.settings import NotifyGuardSettings


def _settings(tmp_path: Path) -> NotifyGuardSettings:
    return NotifyGuardSettings(db_path=str(tmp_path / "notify-guard.db"), workers_enabled=False)


def _bootstrap(tmp_path: Path) -> tuple[TestClient, NotifyGuardSettings, int]:
    settings = _settings(tmp_path)
    bot_id = dbm.create_bot(settings, name="ops", token="999:secret")
    dbm.add_bot_chat(settings, bot_id=bot_id, chat_id="100")
    dbm.add_bot_chat(settings, bot_id=bot_id, chat_id="200")
    dbm.add_bot_chat(settings, bot_id=bot_id, chat_id="300", is_active=False)
    return TestClient(create_app(settings)), settings, bot_id


def test_missing_required_fields_are_rejected_without_writes(tmp_path: Path) -> None:
    client, settings, _bot_id = _bootstrap(tmp_path)
    with client:
        r = client.post("/api/inbound/messages", json={"bot_name": "ops", "text": "hi"})
        assert r.status_code == 400
        assert r.json()["detail"] == "idempotency_key is required"

        r = client.post("/api/inbound/messages", json={"bot_name": "ops", "text": "  ", "idempotency_key": "k"})
        assert r.status_code == 400
        assert r.json()["detail"] == "text is required"

        r = client.post("/api/inbound/messages", json={"text": "hi", "idempotency_key": "k"})
        assert r.status_code == 400
        assert r.json()["detail"] == "bot_name is required"

    assert dbm.list_notifications(settings, limit=50) == []


def test_same_idempotency_key_returns_first_ids(tmp_path: Path) -> None:
    client, settings, bot_id = _bootstrap(tmp_path)
    payload = {"bot_name": "ops", "text": "disk almost full", "idempotency_key": "alert-1"}
    with client:
        r1 = client.post("/api/inbound/messages", json=payload)
        assert r1.status_code == 202
        body1 = r1.json()
        assert body1["ok"] is True
        assert body1["bot_id"] == bot_id
        assert body1["bot_name"] == "ops"
        assert body1["queued"] == 2
        assert body1["deduplicated"] is False
        assert len(body1["notification_ids"]) == 2

        r2 = client.post("/api/inbound/messages", json=payload)
        assert r2.status_code == 202
        body2 = r2.json()
        assert body2["queued"] == 0
        assert body2["deduplicated"] is True
        assert body2["bot_id"] == bot_id
        assert body2["bot_name"] == "ops"
        assert body2["notification_ids"] == body1["notification_ids"]

    jobs = dbm.list_notifications(settings, limit=50)
    assert len(jobs) == 2
    assert {j["chat_id"] for j in jobs} == {"100", "200"}
    assert all(j["idempotency_key"] == "alert-1" for j in jobs)


def test_dedup_ignores_current_targets(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    bot_id = dbm.create_bot(settings, name="ops", token="999:secret")
    dbm.add_bot_chat(settings, bot_id=bot_id, chat_id="100")
    first = queue_inbound_message(settings, bot_name="ops", text="x", idempotency_key="k1")
    dbm.add_bot_chat(settings, bot_id=bot_id, chat_id="200")
    again = queue_inbound_message(settings, bot_name="ops", text="x", idempotency_key="k1")
    assert again.deduplicated is True
    assert again.notification_ids == first.notification_ids


def test_chat_id_targets_single_active_chat(tmp_path: Path) -> None:
    client, settings, _bot_id = _bootstrap(tmp_path)
    with client:
        r = client.post(
            "/api/inbound/messages",
            json={"bot_name": "ops", "chat_id": 200, "text": "only you", "idempotency_key": "k-200"},
        )
        assert r.status_code == 202
        assert r.json()["queued"] == 1

        r = client.post(
            "/api/inbound/messages",
            json={"bot_name": "ops", "chat_id": "300", "text": "inactive", "idempotency_key": "k-300"},
        )
        assert r.status_code == 404
        assert r.json()["detail"] == "chat_not_found"

    jobs = dbm.list_notifications(settings, limit=50)
    assert [j["chat_id"] for j in jobs] == ["200"]


def test_unknown_bot_and_bot_without_chats_are_not_found(tmp_path: Path) -> None:
    client, settings, _bot_id = _bootstrap(tmp_path)
    dbm.create_bot(settings, name="silent", token="1:x")
    with client:
        r = client.post("/api/inbound/messages", json={"bot_name": "ghost", "text": "x", "idempotency_key": "a"})
        assert r.status_code == 404
        assert r.json()["detail"] == "bot_not_found"

        r = client.post("/api/inbound/messages", json={"bot_name": "silent", "text": "x", "idempotency_key": "b"})
        assert r.status_code == 404
        assert r.json()["detail"] == "no_active_chats"


def test_source_prefixes_message_and_tags_job(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    bot_id = dbm.create_bot(settings, name="ops", token="999:secret")
    dbm.add_bot_chat(settings, bot_id=bot_id, chat_id="100")

    res = queue_inbound_message(
        settings, bot_name=" ops ", text="CPU high", idempotency_key="g-1", source="Grafana"
    )
    job = dbm.get_notification(settings, notification_id=res.notification_ids[0])
    assert job is not None
    assert job["message"] == "[Grafana] CPU high"
    assert job["source"] == "rest:grafana"

    plain = queue_inbound_message(settings, bot_name="ops", text="plain", idempotency_key="p-1")
    job = dbm.get_notification(settings, notification_id=plain.notification_ids[0])
    assert job is not None
    assert job["message"] == "plain"
    assert job["source"] == "rest"


def test_validation_error_carries_status_code(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    with pytest.raises(InboundValidationError) as exc_info:
        queue_inbound_message(settings, bot_name="ops", text="x", idempotency_key=None)
    assert exc_info.value.status_code == 400


def test_legacy_bot_chat_is_migrated_on_startup(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    dbm.create_bot(settings, name="legacy", token="7:old", chat_id="555")
    with TestClient(create_app(settings)) as client:
        r = client.post("/api/inbound/messages", json={"bot_name": "legacy", "text": "x", "idempotency_key": "l1"})
        assert r.status_code == 202
        assert r.json()["queued"] == 1

    assert dbm.migrate_legacy_bot_chats(settings) == 0
