"""
Ingestion pipeline.

ingest() validates an error event, fingerprints it, stores it, folds it into
its issue and raises alert signals. Validation errors go back to the caller;
every later stage is best-effort: a store outage, a cache failure or a
failing alert channel is logged and skipped, and the event id is still
returned.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import select, update

from faultline.alerts.engine import AlertEngine
from faultline.config import settings
from faultline.errors import JobError, StoreUnavailable
from faultline.fingerprint import FingerprintResult, generate_fingerprint
from faultline.issues import IssueAggregator, Signal, UpsertResult
from faultline.models import LogRecord, RawEvent, TraceRecord
from faultline.queue import QUEUE_EVENTS, QUEUE_LOGS, QUEUE_METRICS, QUEUE_TRACES, DispatchQueue
from faultline.schemas import ErrorEventIn, LogEventIn, TraceIn
from faultline.utils import minute_floor, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

RawPayload = Union[Dict[str, Any], ErrorEventIn]


def event_row(project_id: str, event: ErrorEventIn, result: FingerprintResult) -> Dict[str, Any]:
    exception = event.exception
    return {
        "event_id": event.event_id,
        "project_id": project_id,
        "timestamp": to_naive_utc(event.timestamp),
        "level": event.level.upper(),
        "platform": event.platform,
        "message": event.message,
        "exception_type": exception.type if exception else None,
        "exception_value": exception.value if exception else None,
        "stack_frames": [frame.model_dump() for frame in exception.stacktrace] if exception else None,
        "fingerprint": result.fingerprint,
        "fingerprint_hash": result.hash,
        "explicit_fingerprint": result.explicit,
        "environment": event.environment,
        "release": event.release,
        "server_name": event.server_name,
        "transaction": event.transaction,
        "user_id": event.user.id if event.user else None,
        "tags": event.tags,
    }


class IngestionPipeline:
    def __init__(
        self,
        store,
        cache,
        aggregator: IssueAggregator,
        alerts: AlertEngine,
        queue: Optional[DispatchQueue] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.aggregator = aggregator
        self.alerts = alerts
        self.queue = queue
        self.clock = clock

    def register_handlers(self, queue: DispatchQueue, metrics) -> None:
        """Wire the queue's handlers to this pipeline and the metrics aggregator."""
        self.queue = queue
        queue.register(QUEUE_EVENTS, self.handle_event_job)
        queue.register(QUEUE_LOGS, self.handle_logs_job)
        queue.register(QUEUE_TRACES, self.handle_traces_job)
        queue.register(QUEUE_METRICS, metrics.handle_job)

    async def _check_rate_limit(self, project_id: str) -> None:
        limit = await self.cache.check_rate_limit(
            f"events:{project_id}", settings.RATE_LIMIT_EVENTS, settings.RATE_LIMIT_WINDOW
        )
        if not limit["allowed"]:
            logger.warning(f"Rate limit exceeded for project {project_id}, event accepted anyway")

    async def ingest(self, project_id: str, raw_event: RawPayload) -> str:
        """
        Process one error event end to end. Raises pydantic.ValidationError
        for malformed events; everything after validation is best-effort.
        """
        event = raw_event if isinstance(raw_event, ErrorEventIn) else ErrorEventIn.model_validate(raw_event)
        await self._check_rate_limit(project_id)

        result = generate_fingerprint(event)

        try:
            duplicate = await self.store.first(select(RawEvent.id).where(RawEvent.event_id == event.event_id))
        except StoreUnavailable:
            duplicate = None
        if duplicate is not None:
            logger.info(f"Duplicate event {event.event_id} ignored")
            return event.event_id

        try:
            await self.store.insert(RawEvent, [event_row(project_id, event, result)])
        except StoreUnavailable as e:
            logger.error(f"Failed to store event {event.event_id}: {str(e)}")

        upserted = await self._upsert_issue(project_id, result, event)
        if upserted is not None:
            await self._raise_signals(upserted)

        try:
            await self.alerts.check_threshold(project_id)
        except Exception as e:
            logger.error(f"Threshold check failed for project {project_id}: {str(e)}", exc_info=True)

        await self.schedule_metrics(project_id, to_naive_utc(event.timestamp, default=self.clock()))
        return event.event_id

    async def _upsert_issue(
        self, project_id: str, result: FingerprintResult, event: ErrorEventIn
    ) -> Optional[UpsertResult]:
        try:
            upserted = await self.aggregator.upsert(project_id, result, event)
        except StoreUnavailable as e:
            logger.error(f"Issue aggregation failed for event {event.event_id}: {str(e)}")
            return None
        try:
            await self.store.execute(
                update(RawEvent).where(RawEvent.event_id == event.event_id).values(issue_id=upserted.issue.id)
            )
        except StoreUnavailable as e:
            logger.error(f"Failed to link event {event.event_id} to issue {upserted.issue.id}: {str(e)}")
        return upserted

    async def _raise_signals(self, upserted: UpsertResult) -> None:
        try:
            if upserted.signal == Signal.CREATED:
                await self.alerts.check_new_issue(upserted.issue)
            elif upserted.signal == Signal.REGRESSED:
                await self.alerts.check_regression(upserted.issue)
        except Exception as e:
            logger.error(f"Alert check failed for issue {upserted.issue.id}: {str(e)}", exc_info=True)

    async def schedule_metrics(self, project_id: str, timestamp: datetime) -> None:
        if self.queue is None:
            return
        try:
            await self.queue.enqueue_metrics(project_id, minute_floor(timestamp))
        except JobError as e:
            logger.warning(f"Failed to schedule metrics for project {project_id}: {str(e)}")

    async def _schedule_minutes(self, project_id: str, timestamps: List[datetime]) -> None:
        for minute in sorted({minute_floor(ts) for ts in timestamps}):
            await self.schedule_metrics(project_id, minute)

    async def ingest_logs(self, project_id: str, logs: List[Union[Dict[str, Any], LogEventIn]]) -> int:
        """Batch insert log lines; returns the number accepted."""
        now = self.clock()
        parsed = [log if isinstance(log, LogEventIn) else LogEventIn.model_validate(log) for log in logs]
        rows = [
            {
                "project_id": project_id,
                "timestamp": to_naive_utc(log.timestamp, default=now),
                "level": log.level.upper(),
                "message": log.message,
                "logger": log.logger,
                "environment": log.environment,
                "service": log.service,
                "request_id": log.request_id,
                "attributes": log.attributes,
            }
            for log in parsed
        ]
        try:
            await self.store.insert(LogRecord, rows)
        except StoreUnavailable as e:
            logger.error(f"Failed to store {len(rows)} logs for project {project_id}: {str(e)}")
        await self._schedule_minutes(project_id, [row["timestamp"] for row in rows])
        return len(rows)

    async def ingest_traces(self, project_id: str, traces: List[Union[Dict[str, Any], TraceIn]]) -> int:
        """Batch insert request traces; returns the number accepted."""
        now = self.clock()
        parsed = [trace if isinstance(trace, TraceIn) else TraceIn.model_validate(trace) for trace in traces]
        rows = [
            {
                "project_id": project_id,
                "trace_id": trace.trace_id,
                "timestamp": to_naive_utc(trace.timestamp, default=now),
                "method": trace.method.upper(),
                "path": trace.path,
                "status_code": trace.status_code,
                "duration_ms": trace.duration,
                "environment": trace.environment,
                "user_id": trace.user_id,
                "error": trace.error,
            }
            for trace in parsed
        ]
        try:
            await self.store.insert(TraceRecord, rows)
        except StoreUnavailable as e:
            logger.error(f"Failed to store {len(rows)} traces for project {project_id}: {str(e)}")
        await self._schedule_minutes(project_id, [row["timestamp"] for row in rows])
        return len(rows)

    async def submit_event(self, project_id: str, raw_event: RawPayload) -> str:
        """
        Validate now, process through the dispatch queue. Falls back to
        in-process ingestion when the broker rejects the job.
        """
        event = raw_event if isinstance(raw_event, ErrorEventIn) else ErrorEventIn.model_validate(raw_event)
        if self.queue is None:
            return await self.ingest(project_id, event)
        try:
            return await self.queue.enqueue_event(project_id, event.model_dump(mode="json"))
        except JobError as e:
            logger.warning(f"Queue unavailable, ingesting event {event.event_id} inline: {str(e)}")
            return await self.ingest(project_id, event)

    async def submit_logs(self, project_id: str, logs: List[Dict[str, Any]]) -> int:
        parsed = [LogEventIn.model_validate(log) for log in logs]
        if self.queue is None:
            return await self.ingest_logs(project_id, parsed)
        try:
            await self.queue.enqueue_logs(project_id, [log.model_dump(mode="json") for log in parsed])
        except JobError as e:
            logger.warning(f"Queue unavailable, ingesting logs inline: {str(e)}")
            return await self.ingest_logs(project_id, parsed)
        return len(parsed)

    async def submit_traces(self, project_id: str, traces: List[Dict[str, Any]]) -> int:
        parsed = [TraceIn.model_validate(trace) for trace in traces]
        if self.queue is None:
            return await self.ingest_traces(project_id, parsed)
        try:
            await self.queue.enqueue_traces(project_id, [trace.model_dump(mode="json") for trace in parsed])
        except JobError as e:
            logger.warning(f"Queue unavailable, ingesting traces inline: {str(e)}")
            return await self.ingest_traces(project_id, parsed)
        return len(parsed)

    async def handle_event_job(self, payload: Dict[str, Any]) -> None:
        await self.ingest(payload["project_id"], payload["event"])

    async def handle_logs_job(self, payload: Dict[str, Any]) -> None:
        await self.ingest_logs(payload["project_id"], payload["logs"])

    async def handle_traces_job(self, payload: Dict[str, Any]) -> None:
        await self.ingest_traces(payload["project_id"], payload["traces"])
