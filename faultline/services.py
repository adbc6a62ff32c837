"""
Service wiring shared by the API and the worker process.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

import httpx
from fastapi import Request

from faultline.alerts.engine import AlertEngine
from faultline.alerts.rules import AlertRuleService
from faultline.cache import MemoryTimeline, NullCache, RedisCache, RedisTimeline
from faultline.config import settings
from faultline.database import AsyncSessionLocal
from faultline.ingest import IngestionPipeline
from faultline.issues import IssueAggregator
from faultline.metrics import MetricsAggregator
from faultline.queue import QUEUES, DispatchQueue, InlineDispatchQueue, RedisQueueBackend, Worker
from faultline.scheduler import Scheduler
from faultline.sessions import ActiveSessionTracker
from faultline.store import SqlStore
from faultline.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: object
    cache: object
    timeline: object
    queue: DispatchQueue
    rules: AlertRuleService
    alerts: AlertEngine
    issues: IssueAggregator
    pipeline: IngestionPipeline
    metrics: MetricsAggregator
    sessions: ActiveSessionTracker
    scheduler: Scheduler
    workers: List[Worker] = field(default_factory=list)

    def start_workers(self) -> None:
        self.workers = [Worker(self.queue, name) for name in QUEUES]
        for worker in self.workers:
            worker.start()
        logger.info(f"Started {len(self.workers)} queue workers")

    async def stop_workers(self) -> None:
        for worker in self.workers:
            await worker.stop()
        self.workers = []

    async def close(self) -> None:
        await self.stop_workers()
        await self.scheduler.stop()
        await self.queue.close()
        await self.cache.close()


def build_services(
    store,
    cache,
    timeline,
    queue: DispatchQueue,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    rules = AlertRuleService(store)
    alerts = AlertEngine(store, cache, rules=rules, http_client=http_client, clock=clock)
    issues = IssueAggregator(store, cache, clock=clock)
    metrics = MetricsAggregator(store)
    sessions = ActiveSessionTracker(store, cache, timeline, clock=clock)
    pipeline = IngestionPipeline(store, cache, issues, alerts, clock=clock)
    pipeline.register_handlers(queue, metrics)
    scheduler = Scheduler(
        store, alerts, sessions, pipeline, interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS, clock=clock
    )
    return Services(
        store=store,
        cache=cache,
        timeline=timeline,
        queue=queue,
        rules=rules,
        alerts=alerts,
        issues=issues,
        pipeline=pipeline,
        metrics=metrics,
        sessions=sessions,
        scheduler=scheduler,
    )


async def create_services() -> Services:
    """Build services from settings; Redis is used only when enabled and reachable."""
    store = SqlStore(AsyncSessionLocal)
    cache = NullCache()
    timeline = MemoryTimeline()
    queue: DispatchQueue = InlineDispatchQueue.from_settings(None)

    if settings.REDIS_ENABLED or settings.ASYNC_INGESTION:
        redis_cache = RedisCache.from_url(settings.REDIS_URL, prefix=settings.QUEUE_PREFIX)
        if await redis_cache.ping():
            logger.info("✅ Redis connected")
            cache = redis_cache
            timeline = RedisTimeline(redis_cache.client, prefix=settings.QUEUE_PREFIX)
            if settings.ASYNC_INGESTION:
                queue = DispatchQueue.from_settings(RedisQueueBackend(redis_cache.client, prefix=settings.QUEUE_PREFIX))
        else:
            logger.warning("⚠️ Redis unreachable, running with in-process cache and inline queue")
            await redis_cache.close()

    return build_services(store, cache, timeline, queue)


def get_services(request: Request) -> Services:
    return request.app.state.services
