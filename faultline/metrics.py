"""
One-minute metric rollups.

A window is recomputed from the raw events, logs and traces of its minute and
written with replace semantics, so running the aggregation any number of
times leaves exactly one identical row per (project, minute).
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select

from faultline.models import LogRecord, MetricWindow, RawEvent, TraceRecord
from faultline.utils import minute_floor, to_naive_utc

logger = logging.getLogger(__name__)

WINDOW = timedelta(minutes=1)


def percentile(values: Sequence[float], q: float) -> float:
    """Percentile with linear interpolation between closest ranks (q in [0, 1])."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = (len(ordered) - 1) * q
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(ordered[lower])
    return float(ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower))


def status_buckets(status_codes: Sequence[int]) -> Dict[str, int]:
    buckets = {"status_2xx": 0, "status_3xx": 0, "status_4xx": 0, "status_5xx": 0}
    for code in status_codes:
        if 200 <= code < 300:
            buckets["status_2xx"] += 1
        elif 300 <= code < 400:
            buckets["status_3xx"] += 1
        elif 400 <= code < 500:
            buckets["status_4xx"] += 1
        elif code >= 500:
            buckets["status_5xx"] += 1
    return buckets


class MetricsAggregator:
    def __init__(self, store):
        self.store = store

    async def compute(self, project_id: str, minute: datetime) -> Dict[str, Any]:
        """Metric values for [minute, minute + 60s) without writing them."""
        start = minute_floor(minute)
        end = start + WINDOW

        level_counts = dict(
            await self.store.rows(
                select(RawEvent.level, func.count(RawEvent.id))
                .where(RawEvent.project_id == project_id, RawEvent.timestamp >= start, RawEvent.timestamp < end)
                .group_by(RawEvent.level)
            )
        )
        log_count = await self.store.scalar(
            select(func.count(LogRecord.id)).where(
                LogRecord.project_id == project_id, LogRecord.timestamp >= start, LogRecord.timestamp < end
            )
        )
        traces = await self.store.rows(
            select(TraceRecord.duration_ms, TraceRecord.status_code).where(
                TraceRecord.project_id == project_id, TraceRecord.timestamp >= start, TraceRecord.timestamp < end
            )
        )

        durations: List[float] = [row[0] for row in traces]
        buckets = status_buckets([row[1] for row in traces])
        request_count = len(traces)
        error_requests = buckets["status_4xx"] + buckets["status_5xx"]

        return {
            "project_id": project_id,
            "minute": start,
            "error_count": level_counts.get("ERROR", 0) + level_counts.get("FATAL", 0),
            "warning_count": level_counts.get("WARNING", 0),
            "log_count": int(log_count or 0),
            "request_count": request_count,
            "avg_duration_ms": sum(durations) / request_count if request_count else 0.0,
            "p50_duration_ms": percentile(durations, 0.50),
            "p95_duration_ms": percentile(durations, 0.95),
            "p99_duration_ms": percentile(durations, 0.99),
            "error_rate": error_requests / request_count * 100 if request_count else 0.0,
            **buckets,
        }

    async def aggregate(self, project_id: str, minute: datetime) -> Dict[str, Any]:
        """Recompute and replace the window of `minute`."""
        values = await self.compute(project_id, minute)
        await self.store.replace(
            MetricWindow,
            {"project_id": project_id, "minute": values["minute"]},
            {key: value for key, value in values.items() if key not in ("project_id", "minute")},
        )
        logger.debug(
            f"Metrics aggregated: project_id={project_id}, minute={values['minute'].isoformat()}, "
            f"requests={values['request_count']}, errors={values['error_count']}, logs={values['log_count']}"
        )
        return values

    async def handle_job(self, payload: Dict[str, Any]) -> None:
        """Handler for metrics queue jobs ({"project_id", "minute"})."""
        minute = to_naive_utc(payload.get("minute"))
        if minute is None:
            logger.warning(f"Metrics job without a valid minute skipped: {payload}")
            return
        await self.aggregate(payload["project_id"], minute)

    async def get_series(
        self,
        project_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[MetricWindow]:
        stmt = select(MetricWindow).where(MetricWindow.project_id == project_id)
        if start is not None:
            stmt = stmt.where(MetricWindow.minute >= minute_floor(start))
        if end is not None:
            stmt = stmt.where(MetricWindow.minute <= end)
        return await self.store.all(stmt.order_by(MetricWindow.minute))
