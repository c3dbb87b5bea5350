from __future__ import annotations

import asyncio
from datetime import datetime

import httpx
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from notify_guard.app_log import build_error_details, write_app_log
from notify_guard.delivery import DeliveryBatchResult, run_delivery_batch
from notify_guard.monitor import MonitorScheduler
from notify_guard.settings import NotifyGuardSettings


logger = structlog.get_logger(__name__)


class BackgroundWorkers:
    """Monitor and delivery interval jobs sharing the app's event loop."""

    def __init__(self, settings: NotifyGuardSettings, *, monitor: MonitorScheduler | None = None) -> None:
        self.settings = settings
        self.monitor = monitor or MonitorScheduler(settings)
        self.scheduler: AsyncIOScheduler | None = None
        self.http_client: httpx.AsyncClient | None = None
        self.running = False

    async def start(self) -> None:
        if self.running:
            logger.warning("workers_already_running")
            return

        self.http_client = httpx.AsyncClient()
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.monitor.tick,
            trigger=IntervalTrigger(seconds=max(1, int(self.settings.monitor_interval_seconds))),
            id="monitor",
            name="Device monitor cycle",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        self.scheduler.add_job(
            self.deliver_once,
            trigger=IntervalTrigger(seconds=max(1, int(self.settings.delivery_interval_seconds))),
            id="delivery",
            name="Notification delivery",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info(
            "workers_started",
            monitor_interval_seconds=self.settings.monitor_interval_seconds,
            delivery_interval_seconds=self.settings.delivery_interval_seconds,
        )

    async def stop(self) -> None:
        if not self.running:
            return
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        self.running = False
        logger.info("workers_stopped")

    async def deliver_once(self) -> DeliveryBatchResult | None:
        if self.http_client is None:
            return None
        try:
            return await run_delivery_batch(self.settings, self.http_client)
        except Exception as e:
            logger.exception("delivery_batch_failed")
            await asyncio.to_thread(
                write_app_log,
                self.settings,
                level="error",
                scope="delivery",
                message="Delivery batch failed",
                details=build_error_details(e),
            )
            return None
