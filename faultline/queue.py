"""
Async dispatch queue.

Four logical queues (events, logs, traces, metrics) carry ingestion work to
workers. Jobs are ordered by priority, then arrival. Event jobs are
deduplicated by event id; metrics jobs are delayed and keyed per
(project, minute) so a burst of traffic collapses into a single rollup.
Failed jobs are retried with exponential backoff and end up in a failed set
once their attempts are exhausted.

Backends:
- RedisQueueBackend: sorted sets and hashes on redis.asyncio, shared by processes
- MemoryQueueBackend: single process, used by tests and InlineDispatchQueue
"""
import asyncio
import heapq
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from faultline.config import settings
from faultline.errors import JobError
from faultline.utils import epoch_ms

logger = logging.getLogger(__name__)

QUEUE_EVENTS = "events"
QUEUE_LOGS = "logs"
QUEUE_TRACES = "traces"
QUEUE_METRICS = "metrics"
QUEUES = (QUEUE_EVENTS, QUEUE_LOGS, QUEUE_TRACES, QUEUE_METRICS)

LEVEL_PRIORITIES = {
    "fatal": 1,
    "error": 1,
    "warning": 2,
    "info": 3,
    "debug": 4,
}
DEFAULT_PRIORITY = 2
BATCH_PRIORITY = 2
METRICS_PRIORITY = 3

# Waiting-set score: priority first, then arrival order
PRIORITY_SCALE = 10 ** 12

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def priority_for_level(level: Optional[str]) -> int:
    return LEVEL_PRIORITIES.get((level or "").lower(), DEFAULT_PRIORITY)


def metrics_job_id(project_id: str, minute: datetime) -> str:
    return f"metrics-{project_id}-{epoch_ms(minute) // 60000}"


@dataclass
class DispatchJob:
    queue: str
    job_id: str
    payload: Dict[str, Any]
    priority: int = DEFAULT_PRIORITY
    sequence: int = 0
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw) -> "DispatchJob":
        return cls(**json.loads(raw))

    @property
    def score(self) -> int:
        return self.priority * PRIORITY_SCALE + self.sequence


@dataclass
class _QueueState:
    waiting: List[Tuple[int, int, str]] = field(default_factory=list)
    delayed: Dict[str, float] = field(default_factory=dict)
    jobs: Dict[str, DispatchJob] = field(default_factory=dict)
    active: set = field(default_factory=set)
    failed: Dict[str, DispatchJob] = field(default_factory=dict)
    completed: int = 0
    sequence: int = 0
    paused: bool = False


class MemoryQueueBackend:
    """In-process queue storage (heap per queue)."""

    def __init__(self):
        self._queues: Dict[str, _QueueState] = {name: _QueueState() for name in QUEUES}
        self._dedupe: Dict[Tuple[str, str], float] = {}
        # (expires_at, queue, job_id), oldest first; stale entries are skipped on purge
        self._dedupe_expiry: List[Tuple[float, str, str]] = []
        self._ready = asyncio.Event()

    def _purge_dedupe(self, now: float) -> None:
        while self._dedupe_expiry and self._dedupe_expiry[0][0] <= now:
            expires_at, queue, job_id = heapq.heappop(self._dedupe_expiry)
            if self._dedupe.get((queue, job_id)) == expires_at:
                del self._dedupe[(queue, job_id)]

    async def claim_dedupe(self, queue: str, job_id: str, ttl_seconds: float, now: float) -> bool:
        self._purge_dedupe(now)
        if (queue, job_id) in self._dedupe:
            return False
        expires_at = now + ttl_seconds
        self._dedupe[(queue, job_id)] = expires_at
        heapq.heappush(self._dedupe_expiry, (expires_at, queue, job_id))
        return True

    async def next_sequence(self, queue: str) -> int:
        state = self._queues[queue]
        state.sequence += 1
        return state.sequence

    async def push(self, job: DispatchJob) -> None:
        state = self._queues[job.queue]
        state.jobs[job.job_id] = job
        heapq.heappush(state.waiting, (job.priority, job.sequence, job.job_id))
        self._ready.set()

    async def schedule(self, job: DispatchJob, ready_at: float) -> None:
        state = self._queues[job.queue]
        state.jobs[job.job_id] = job
        state.delayed[job.job_id] = ready_at

    async def promote_due(self, queue: str, now: float) -> int:
        state = self._queues[queue]
        due = [job_id for job_id, ready_at in state.delayed.items() if ready_at <= now]
        for job_id in due:
            del state.delayed[job_id]
            job = state.jobs[job_id]
            heapq.heappush(state.waiting, (job.priority, job.sequence, job_id))
        return len(due)

    async def pop(self, queue: str, timeout: float = 0) -> Optional[DispatchJob]:
        state = self._queues[queue]
        if not state.waiting and timeout > 0:
            self._ready.clear()
            try:
                await asyncio.wait_for(self._ready.wait(), timeout)
            except asyncio.TimeoutError:
                return None
        if not state.waiting:
            return None
        _, _, job_id = heapq.heappop(state.waiting)
        state.active.add(job_id)
        return state.jobs[job_id]

    async def complete(self, job: DispatchJob) -> None:
        state = self._queues[job.queue]
        state.active.discard(job.job_id)
        state.jobs.pop(job.job_id, None)
        state.completed += 1

    async def retry_later(self, job: DispatchJob, ready_at: float) -> None:
        self._queues[job.queue].active.discard(job.job_id)
        await self.schedule(job, ready_at)

    async def fail(self, job: DispatchJob) -> None:
        state = self._queues[job.queue]
        state.active.discard(job.job_id)
        state.jobs.pop(job.job_id, None)
        state.failed[job.job_id] = job

    async def get_failed(self, queue: str) -> List[DispatchJob]:
        return list(self._queues[queue].failed.values())

    async def remove_failed(self, queue: str, job_id: str) -> None:
        self._queues[queue].failed.pop(job_id, None)

    async def counts(self, queue: str) -> Dict[str, int]:
        state = self._queues[queue]
        return {
            "waiting": len(state.waiting),
            "active": len(state.active),
            "completed": state.completed,
            "failed": len(state.failed),
            "delayed": len(state.delayed),
        }

    async def set_paused(self, queue: str, paused: bool) -> None:
        self._queues[queue].paused = paused

    async def is_paused(self, queue: str) -> bool:
        return self._queues[queue].paused

    async def close(self) -> None:
        return None


class RedisQueueBackend:
    """
    Queue storage on Redis, shared by every API and worker process.

    Keys per queue (under "{prefix}:queue:{name}"):
    waiting (zset, score = priority * 10**12 + sequence), delayed (zset,
    score = ready time in ms), jobs (hash job_id -> JSON), active (set),
    failed (zset, score = failure time), completed / seq (counters), paused.
    """

    def __init__(self, client: redis.Redis, prefix: str = "faultline"):
        self.client = client
        self.prefix = prefix

    def _key(self, queue: str, part: str) -> str:
        return f"{self.prefix}:queue:{queue}:{part}"

    async def claim_dedupe(self, queue: str, job_id: str, ttl_seconds: float, now: float) -> bool:
        claimed = await self.client.set(
            self._key(queue, f"dedupe:{job_id}"), 1, nx=True, ex=max(1, int(ttl_seconds))
        )
        return bool(claimed)

    async def next_sequence(self, queue: str) -> int:
        return int(await self.client.incr(self._key(queue, "seq")))

    async def push(self, job: DispatchJob) -> None:
        pipe = self.client.pipeline()
        pipe.hset(self._key(job.queue, "jobs"), job.job_id, job.to_json())
        pipe.zadd(self._key(job.queue, "waiting"), {job.job_id: job.score})
        await pipe.execute()

    async def schedule(self, job: DispatchJob, ready_at: float) -> None:
        pipe = self.client.pipeline()
        pipe.hset(self._key(job.queue, "jobs"), job.job_id, job.to_json())
        pipe.zadd(self._key(job.queue, "delayed"), {job.job_id: int(ready_at * 1000)})
        await pipe.execute()

    async def promote_due(self, queue: str, now: float) -> int:
        delayed_key = self._key(queue, "delayed")
        due = await self.client.zrangebyscore(delayed_key, 0, int(now * 1000))
        promoted = 0
        for member in due:
            # Only the process that removes the entry promotes it
            if not await self.client.zrem(delayed_key, member):
                continue
            raw = await self.client.hget(self._key(queue, "jobs"), member)
            if raw is None:
                continue
            job = DispatchJob.from_json(raw)
            await self.client.zadd(self._key(queue, "waiting"), {job.job_id: job.score})
            promoted += 1
        return promoted

    async def pop(self, queue: str, timeout: float = 0) -> Optional[DispatchJob]:
        waiting_key = self._key(queue, "waiting")
        if timeout > 0:
            popped = await self.client.bzpopmin(waiting_key, timeout=timeout)
            if not popped:
                return None
            member = popped[1]
        else:
            popped = await self.client.zpopmin(waiting_key)
            if not popped:
                return None
            member = popped[0][0]
        raw = await self.client.hget(self._key(queue, "jobs"), member)
        if raw is None:
            logger.warning(f"Job {member!r} in {queue} has no payload, dropped")
            return None
        job = DispatchJob.from_json(raw)
        await self.client.sadd(self._key(queue, "active"), job.job_id)
        return job

    async def complete(self, job: DispatchJob) -> None:
        pipe = self.client.pipeline()
        pipe.srem(self._key(job.queue, "active"), job.job_id)
        pipe.hdel(self._key(job.queue, "jobs"), job.job_id)
        pipe.incr(self._key(job.queue, "completed"))
        await pipe.execute()

    async def retry_later(self, job: DispatchJob, ready_at: float) -> None:
        await self.client.srem(self._key(job.queue, "active"), job.job_id)
        await self.schedule(job, ready_at)

    async def fail(self, job: DispatchJob) -> None:
        pipe = self.client.pipeline()
        pipe.srem(self._key(job.queue, "active"), job.job_id)
        pipe.hset(self._key(job.queue, "jobs"), job.job_id, job.to_json())
        pipe.zadd(self._key(job.queue, "failed"), {job.job_id: int(time.time() * 1000)})
        await pipe.execute()

    async def get_failed(self, queue: str) -> List[DispatchJob]:
        job_ids = await self.client.zrange(self._key(queue, "failed"), 0, -1)
        if not job_ids:
            return []
        raws = await self.client.hmget(self._key(queue, "jobs"), job_ids)
        return [DispatchJob.from_json(raw) for raw in raws if raw is not None]

    async def remove_failed(self, queue: str, job_id: str) -> None:
        await self.client.zrem(self._key(queue, "failed"), job_id)

    async def counts(self, queue: str) -> Dict[str, int]:
        pipe = self.client.pipeline()
        pipe.zcard(self._key(queue, "waiting"))
        pipe.scard(self._key(queue, "active"))
        pipe.get(self._key(queue, "completed"))
        pipe.zcard(self._key(queue, "failed"))
        pipe.zcard(self._key(queue, "delayed"))
        waiting, active, completed, failed, delayed = await pipe.execute()
        return {
            "waiting": int(waiting or 0),
            "active": int(active or 0),
            "completed": int(completed or 0),
            "failed": int(failed or 0),
            "delayed": int(delayed or 0),
        }

    async def set_paused(self, queue: str, paused: bool) -> None:
        if paused:
            await self.client.set(self._key(queue, "paused"), 1)
        else:
            await self.client.delete(self._key(queue, "paused"))

    async def is_paused(self, queue: str) -> bool:
        return bool(await self.client.exists(self._key(queue, "paused")))

    async def close(self) -> None:
        # The client belongs to RedisCache, which closes it
        return None


class DispatchQueue:
    """Queue front-end: routing, priorities, dedupe and retry policy."""

    def __init__(
        self,
        backend,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
        metrics_delay_seconds: float = 60.0,
        dedupe_ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.metrics_delay_seconds = metrics_delay_seconds
        self.dedupe_ttl_seconds = dedupe_ttl_seconds
        self.clock = clock
        self.handlers: Dict[str, Handler] = {}

    @classmethod
    def from_settings(cls, backend) -> "DispatchQueue":
        return cls(
            backend,
            attempts=settings.QUEUE_ATTEMPTS,
            backoff_seconds=settings.QUEUE_BACKOFF_SECONDS,
            metrics_delay_seconds=settings.METRICS_DELAY_SECONDS,
            dedupe_ttl_seconds=settings.DEDUPE_TTL_SECONDS,
        )

    def register(self, queue: str, handler: Handler) -> None:
        self._check_queue(queue)
        self.handlers[queue] = handler

    def _check_queue(self, queue: str) -> None:
        if queue not in QUEUES:
            raise JobError(f"Unknown queue: {queue}")

    def _handler(self, queue: str) -> Handler:
        handler = self.handlers.get(queue)
        if handler is None:
            raise JobError(f"No handler registered for queue {queue}")
        return handler

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_seconds * 2 ** (attempt - 1)

    def _new_job(self, queue: str, payload: Dict[str, Any], job_id: Optional[str], priority: int) -> DispatchJob:
        return DispatchJob(
            queue=queue,
            job_id=job_id or str(uuid.uuid4()),
            payload=payload,
            priority=priority,
            max_attempts=self.attempts,
        )

    async def enqueue(
        self,
        queue: str,
        payload: Dict[str, Any],
        job_id: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
        delay: float = 0,
        dedupe_ttl: Optional[float] = None,
    ) -> str:
        """
        Add a job; returns its id. With `dedupe_ttl`, a job id already
        enqueued within the window is a no-op returning the same id.
        """
        self._check_queue(queue)
        job = self._new_job(queue, payload, job_id, priority)
        try:
            if dedupe_ttl and not await self.backend.claim_dedupe(queue, job.job_id, dedupe_ttl, self.clock()):
                logger.debug(f"Duplicate job {job.job_id} on {queue} ignored")
                return job.job_id
            job.sequence = await self.backend.next_sequence(queue)
            if delay > 0:
                await self.backend.schedule(job, self.clock() + delay)
            else:
                await self.backend.push(job)
        except (RedisError, OSError) as e:
            raise JobError(f"Failed to enqueue {job.job_id} on {queue}: {str(e)}") from e
        return job.job_id

    async def enqueue_event(self, project_id: str, event: Dict[str, Any]) -> str:
        return await self.enqueue(
            QUEUE_EVENTS,
            {"project_id": project_id, "event": event},
            job_id=event["event_id"],
            priority=priority_for_level(event.get("level")),
            dedupe_ttl=self.dedupe_ttl_seconds,
        )

    async def enqueue_logs(self, project_id: str, logs: List[Dict[str, Any]]) -> str:
        return await self.enqueue(QUEUE_LOGS, {"project_id": project_id, "logs": logs}, priority=BATCH_PRIORITY)

    async def enqueue_traces(self, project_id: str, traces: List[Dict[str, Any]]) -> str:
        return await self.enqueue(QUEUE_TRACES, {"project_id": project_id, "traces": traces}, priority=BATCH_PRIORITY)

    async def enqueue_metrics(self, project_id: str, minute: datetime) -> str:
        return await self.enqueue(
            QUEUE_METRICS,
            {"project_id": project_id, "minute": minute.isoformat()},
            job_id=metrics_job_id(project_id, minute),
            priority=METRICS_PRIORITY,
            delay=self.metrics_delay_seconds,
            dedupe_ttl=max(1.0, self.metrics_delay_seconds),
        )

    async def process(self, job: DispatchJob) -> bool:
        """Run one attempt of a popped job. Returns True on success."""
        handler = self._handler(job.queue)
        job.attempts += 1
        try:
            await handler(job.payload)
        except Exception as e:
            job.last_error = str(e)
            if job.attempts < job.max_attempts:
                delay = self.backoff_delay(job.attempts)
                logger.warning(
                    f"Job {job.job_id} on {job.queue} failed (attempt {job.attempts}/{job.max_attempts}), "
                    f"retrying in {delay}s: {str(e)}"
                )
                await self.backend.retry_later(job, self.clock() + delay)
            else:
                logger.error(f"Job {job.job_id} on {job.queue} failed permanently: {str(e)}", exc_info=True)
                await self.backend.fail(job)
            return False
        await self.backend.complete(job)
        return True

    async def get_stats(self) -> Dict[str, Dict[str, int]]:
        return {queue: await self.backend.counts(queue) for queue in QUEUES}

    async def get_failed(self, queue: str) -> List[DispatchJob]:
        self._check_queue(queue)
        return await self.backend.get_failed(queue)

    async def retry_failed(self, queue: str, job_id: Optional[str] = None) -> int:
        """Re-queue failed jobs (all of the queue, or one) with fresh attempts."""
        retried = 0
        for job in await self.get_failed(queue):
            if job_id and job.job_id != job_id:
                continue
            await self.backend.remove_failed(queue, job.job_id)
            job.attempts = 0
            job.last_error = None
            await self._requeue(job)
            retried += 1
        if retried:
            logger.info(f"Re-queued {retried} failed job(s) on {queue}")
        return retried

    async def _requeue(self, job: DispatchJob) -> None:
        await self.backend.push(job)

    async def pause_all(self) -> None:
        for queue in QUEUES:
            await self.backend.set_paused(queue, True)
        logger.info("All queues paused")

    async def resume_all(self) -> None:
        for queue in QUEUES:
            await self.backend.set_paused(queue, False)
        logger.info("All queues resumed")

    async def close(self) -> None:
        await self.backend.close()


class InlineDispatchQueue(DispatchQueue):
    """
    Queue used without a broker: handlers run inside enqueue.

    Dedupe, retry with backoff and the failed set behave as with a broker.
    Delayed jobs run immediately with a single attempt and are not
    deduplicated; the only delayed jobs are metrics rollups, which are
    idempotent and redone by the scheduler once their minute closes. A
    failing rollup goes straight to the failed set.
    """

    def __init__(self, backend=None, **kwargs):
        super().__init__(backend or MemoryQueueBackend(), **kwargs)

    async def enqueue(
        self,
        queue: str,
        payload: Dict[str, Any],
        job_id: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
        delay: float = 0,
        dedupe_ttl: Optional[float] = None,
    ) -> str:
        self._check_queue(queue)
        job = self._new_job(queue, payload, job_id, priority)
        if dedupe_ttl and delay <= 0:
            if not await self.backend.claim_dedupe(queue, job.job_id, dedupe_ttl, self.clock()):
                logger.debug(f"Duplicate job {job.job_id} on {queue} ignored")
                return job.job_id
        job.sequence = await self.backend.next_sequence(queue)
        if delay > 0:
            job.max_attempts = 1
        if await self.backend.is_paused(queue):
            await self.backend.push(job)
            return job.job_id
        await self._run(job)
        return job.job_id

    async def _run(self, job: DispatchJob) -> None:
        handler = self._handler(job.queue)
        while True:
            job.attempts += 1
            try:
                await handler(job.payload)
            except Exception as e:
                job.last_error = str(e)
                if job.attempts >= job.max_attempts:
                    logger.error(f"Job {job.job_id} on {job.queue} failed permanently: {str(e)}", exc_info=True)
                    await self.backend.fail(job)
                    return
                delay = self.backoff_delay(job.attempts)
                logger.warning(
                    f"Job {job.job_id} on {job.queue} failed (attempt {job.attempts}/{job.max_attempts}), "
                    f"retrying in {delay}s: {str(e)}"
                )
                await asyncio.sleep(delay)
                continue
            await self.backend.complete(job)
            return

    async def _requeue(self, job: DispatchJob) -> None:
        await self._run(job)

    async def resume_all(self) -> None:
        await super().resume_all()
        # Run whatever was held back while paused
        for queue in QUEUES:
            while True:
                job = await self.backend.pop(queue)
                if job is None:
                    break
                await self._run(job)


class Worker:
    """Consumes one queue: promotes due delayed jobs, pops, runs the handler."""

    def __init__(self, queue: DispatchQueue, name: str, poll_interval: float = 1.0):
        if name not in QUEUES:
            raise JobError(f"Unknown queue: {name}")
        self.queue = queue
        self.name = name
        self.poll_interval = poll_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> bool:
        """Process at most one job. Returns True when a job was processed."""
        backend = self.queue.backend
        await backend.promote_due(self.name, self.queue.clock())
        if await backend.is_paused(self.name):
            return False
        job = await backend.pop(self.name, timeout=self.poll_interval)
        if job is None:
            return False
        await self.queue.process(job)
        return True

    async def run(self) -> None:
        self._running = True
        logger.info(f"Worker started: queue={self.name}")
        while self._running:
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {self.name} error: {str(e)}", exc_info=True)
                processed = False
            if not processed:
                await asyncio.sleep(self.poll_interval)
        logger.info(f"Worker stopped: queue={self.name}")

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
