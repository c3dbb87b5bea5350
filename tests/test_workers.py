from __future__ import annotations

from pathlib import Path

import pytest

from notify_guard.monitor import MonitorScheduler
from notify_guard.settings import NotifyGuardSettings
from notify_guard.workers import BackgroundWorkers


@pytest.mark.asyncio
async def test_workers_register_jobs_and_stop_cleanly(tmp_path: Path) -> None:
    settings = NotifyGuardSettings(db_path=str(tmp_path / "notify-guard.db"), workers_enabled=True)

    async def _noop() -> None:
        return None

    workers = BackgroundWorkers(settings, monitor=MonitorScheduler(settings, cycle=_noop))
    assert await workers.deliver_once() is None

    await workers.start()
    try:
        assert workers.running is True
        assert workers.scheduler is not None
        jobs = {j.id: j for j in workers.scheduler.get_jobs()}
        assert set(jobs) == {"monitor", "delivery"}
        assert jobs["monitor"].max_instances == 1
        assert jobs["delivery"].max_instances == 1

        result = await workers.deliver_once()
        assert result is not None
        assert (result.sent, result.failed) == (0, 0)
    finally:
        await workers.stop()

    assert workers.running is False
    assert workers.http_client is None
