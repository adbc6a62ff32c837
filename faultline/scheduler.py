"""
Periodic background jobs.

Every interval:
- threshold and custom (SPIKE/CUSTOM) rules are evaluated for each project
  that has enabled rules, so alerts fire even when no new event arrives
- sessions without a recent heartbeat are marked inactive
- metrics rollups are scheduled for the minute that just closed
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set

from sqlalchemy import select

from faultline.errors import FaultlineError
from faultline.models import AlertRule, LogRecord, RawEvent, TraceRecord
from faultline.utils import minute_floor, utcnow

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        store,
        alerts,
        sessions,
        pipeline,
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.alerts = alerts
        self.sessions = sessions
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    async def _projects_with_rules(self) -> List[str]:
        return await self.store.all(
            select(AlertRule.project_id).where(AlertRule.is_enabled.is_(True)).distinct()
        )

    async def _projects_with_traffic(self, start: datetime, end: datetime) -> Set[str]:
        projects: Set[str] = set()
        for model in (RawEvent, LogRecord, TraceRecord):
            projects.update(
                await self.store.all(
                    select(model.project_id).where(model.timestamp >= start, model.timestamp < end).distinct()
                )
            )
        return projects

    async def run_once(self) -> None:
        for project_id in await self._projects_with_rules():
            try:
                await self.alerts.check_threshold(project_id)
                await self.alerts.check_custom(project_id)
            except Exception as e:
                logger.error(f"Scheduled alert checks failed for project {project_id}: {str(e)}", exc_info=True)

        try:
            await self.sessions.expire_stale()
        except FaultlineError as e:
            logger.error(f"Session sweep failed: {str(e)}")

        previous_minute = minute_floor(self.clock()) - timedelta(minutes=1)
        for project_id in sorted(await self._projects_with_traffic(previous_minute, previous_minute + timedelta(minutes=1))):
            await self.pipeline.schedule_metrics(project_id, previous_minute)

    async def run(self) -> None:
        logger.info(f"Scheduler started: interval={self.interval_seconds}s")
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduler run failed: {str(e)}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler stopped")
