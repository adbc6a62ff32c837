"""
Issue aggregation: maps (project, fingerprint) to a durable issue.

The first event of a fingerprint creates the issue, later events update its
counters, and an event matching a RESOLVED issue reopens it (regression).
Updates for one key run under a best-effort advisory lock; when the lock
cannot be taken the update proceeds and concurrent counters are approximate.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Integer, and_, cast, delete, desc, func, or_, select, update

from faultline.config import settings
from faultline.errors import NotFoundError, StoreUnavailable
from faultline.fingerprint import FingerprintResult, generate_short_id
from faultline.models import Issue, IssueStatus, RawEvent
from faultline.schemas import ErrorEventIn
from faultline.utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 255


class Signal(str, Enum):
    NONE = "none"
    CREATED = "created"
    REGRESSED = "regressed"


@dataclass
class UpsertResult:
    issue: Issue
    signal: Signal


def build_title(event: ErrorEventIn) -> str:
    exception = event.exception
    if exception and exception.type:
        detail = exception.value or event.message
        title = f"{exception.type}: {detail}" if detail else exception.type
    else:
        title = event.message
    return title[:MAX_TITLE_LENGTH]


def _union(values: Optional[List[str]], value: Optional[str]) -> List[str]:
    merged = list(values or [])
    if value and value not in merged:
        merged.append(value)
    return merged


class IssueAggregator:
    def __init__(self, store, cache, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.cache = cache
        self.clock = clock

    async def upsert(self, project_id: str, result: FingerprintResult, event: ErrorEventIn) -> UpsertResult:
        """
        Create or update the issue for a fingerprinted event.

        Signal is CREATED for a new issue, REGRESSED when a RESOLVED issue
        reopened, NONE otherwise. IGNORED issues stay IGNORED.
        """
        lock_key = f"issue:{project_id}:{result.hash}"
        async with self.cache.lock(lock_key, ttl_seconds=settings.ISSUE_LOCK_TTL, wait_seconds=settings.LOCK_WAIT_SECONDS):
            existing = await self.get_by_fingerprint(project_id, result.hash)
            if existing is not None:
                return await self._update(existing, event)
            try:
                issue = await self._create(project_id, result, event)
            except StoreUnavailable:
                # Lost a creation race against another worker: update the winner
                existing = await self.get_by_fingerprint(project_id, result.hash)
                if existing is None:
                    raise
                logger.warning(f"Concurrent issue creation for {lock_key}, updating existing issue {existing.id}")
                return await self._update(existing, event)
            return UpsertResult(issue=issue, signal=Signal.CREATED)

    async def _next_short_id(self, project_id: str) -> str:
        counter = await self.cache.incr(f"short-id:{project_id}")
        if counter is None:
            # Next after the highest number in use; gaps left by delete or merge are not refilled
            prefix = f"{settings.SHORT_ID_PREFIX}-"
            highest = await self.store.scalar(
                select(func.max(cast(func.substr(Issue.short_id, len(prefix) + 1), Integer))).where(
                    Issue.project_id == project_id, Issue.short_id.like(f"{prefix}%")
                )
            )
            counter = (highest or 0) + 1
        return generate_short_id(settings.SHORT_ID_PREFIX, counter)

    async def _create(self, project_id: str, result: FingerprintResult, event: ErrorEventIn) -> Issue:
        timestamp = to_naive_utc(event.timestamp, default=self.clock())
        issue = Issue(
            id=str(uuid.uuid4()),
            project_id=project_id,
            fingerprint_hash=result.hash,
            fingerprint=result.fingerprint,
            short_id=await self._next_short_id(project_id),
            title=build_title(event),
            culprit=result.culprit,
            type=event.exception.type if event.exception else None,
            level=event.level.upper(),
            platform=event.platform,
            status=IssueStatus.UNRESOLVED,
            first_seen=timestamp,
            last_seen=timestamp,
            event_count=1,
            user_count=1 if event.user and event.user.id else 0,
            environments=_union([], event.environment),
            releases=_union([], event.release),
            sample_event_id=event.event_id,
            meta=result.metadata,
            updated_at=self.clock(),
        )
        issue = await self.store.add(issue)
        logger.info(f"Issue created: id={issue.id}, short_id={issue.short_id}, project_id={project_id}")
        return issue

    async def _update(self, issue: Issue, event: ErrorEventIn) -> UpsertResult:
        timestamp = to_naive_utc(event.timestamp, default=self.clock())
        signal = Signal.NONE
        if issue.status == IssueStatus.RESOLVED:
            issue.status = IssueStatus.UNRESOLVED
            issue.resolved_at = None
            signal = Signal.REGRESSED
            logger.warning(f"Issue regressed: id={issue.id}, short_id={issue.short_id}")

        if issue.last_seen is None or timestamp > issue.last_seen:
            issue.last_seen = timestamp
        issue.event_count = (issue.event_count or 0) + 1
        issue.user_count = await self.count_users(issue)
        issue.environments = _union(issue.environments, event.environment)
        issue.releases = _union(issue.releases, event.release)
        issue.updated_at = self.clock()

        issue = await self.store.save(issue)
        return UpsertResult(issue=issue, signal=signal)

    def _events_of(self, issue: Issue):
        """Events linked to the issue, plus unlinked events with its fingerprint."""
        return or_(
            RawEvent.issue_id == issue.id,
            and_(
                RawEvent.issue_id.is_(None),
                RawEvent.project_id == issue.project_id,
                RawEvent.fingerprint_hash == issue.fingerprint_hash,
            ),
        )

    async def count_users(self, issue: Issue) -> int:
        count = await self.store.scalar(
            select(func.count(func.distinct(RawEvent.user_id))).where(
                self._events_of(issue),
                RawEvent.user_id.isnot(None),
                RawEvent.user_id != "",
            )
        )
        return int(count or 0)

    async def get_by_fingerprint(self, project_id: str, fingerprint_hash: str) -> Optional[Issue]:
        return await self.store.first(
            select(Issue).where(Issue.project_id == project_id, Issue.fingerprint_hash == fingerprint_hash)
        )

    async def get(self, issue_id: str) -> Issue:
        issue = await self.store.first(select(Issue).where(Issue.id == issue_id))
        if issue is None:
            raise NotFoundError(f"Issue {issue_id} not found")
        return issue

    async def get_by_short_id(self, project_id: str, short_id: str) -> Issue:
        issue = await self.store.first(
            select(Issue).where(Issue.project_id == project_id, Issue.short_id == short_id.upper())
        )
        if issue is None:
            raise NotFoundError(f"Issue {short_id} not found in {project_id}")
        return issue

    async def list(
        self,
        project_id: str,
        status: Optional[str] = None,
        level: Optional[str] = None,
        environment: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Issue]:
        stmt = select(Issue).where(Issue.project_id == project_id)
        if status:
            stmt = stmt.where(Issue.status == status.upper())
        if level:
            stmt = stmt.where(Issue.level == level.upper())
        if environment:
            stmt = stmt.where(
                Issue.id.in_(select(RawEvent.issue_id).where(RawEvent.environment == environment))
            )
        stmt = stmt.order_by(desc(Issue.last_seen)).limit(limit).offset(offset)
        return await self.store.all(stmt)

    async def update_status(self, issue_id: str, status: str) -> Issue:
        status = status.upper()
        if status not in IssueStatus.ALL:
            raise ValueError(f"Unknown issue status: {status}")
        issue = await self.get(issue_id)
        issue.status = status
        issue.resolved_at = self.clock() if status == IssueStatus.RESOLVED else None
        issue.updated_at = self.clock()
        issue = await self.store.save(issue)
        logger.info(f"Issue status updated: id={issue_id}, status={status}")
        return issue

    async def delete(self, issue_id: str) -> None:
        issue = await self.get(issue_id)
        await self.store.execute(
            delete(RawEvent).where(self._events_of(issue)),
            delete(Issue).where(Issue.id == issue_id),
        )
        logger.info(f"Issue deleted: id={issue_id}")

    async def merge(self, target_id: str, source_ids: List[str]) -> Issue:
        """Fold source issues into the target; sources and their links are removed."""
        target = await self.get(target_id)
        source_ids = [source_id for source_id in dict.fromkeys(source_ids) if source_id != target_id]
        if not source_ids:
            return target

        sources = await self.store.all(select(Issue).where(Issue.id.in_(source_ids)))
        missing = set(source_ids) - {source.id for source in sources}
        if missing:
            raise NotFoundError(f"Issues not found: {', '.join(sorted(missing))}")
        for source in sources:
            if source.project_id != target.project_id:
                raise ValueError(f"Issue {source.id} belongs to another project")

        for source in sources:
            target.event_count = (target.event_count or 0) + (source.event_count or 0)
            if source.first_seen and source.first_seen < target.first_seen:
                target.first_seen = source.first_seen
            if source.last_seen and source.last_seen > target.last_seen:
                target.last_seen = source.last_seen
            for environment in source.environments or []:
                target.environments = _union(target.environments, environment)
            for release in source.releases or []:
                target.releases = _union(target.releases, release)

        await self.store.execute(
            update(RawEvent).where(or_(*[self._events_of(source) for source in sources])).values(issue_id=target.id),
            delete(Issue).where(Issue.id.in_(source_ids)),
        )

        target.user_count = await self.count_users(target)
        target.updated_at = self.clock()
        target = await self.store.save(target)
        logger.info(f"Issues merged: target_id={target_id}, source_ids={source_ids}")
        return target

    async def get_stats(self, project_id: str) -> Dict[str, Any]:
        now = self.clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=7)

        by_status = dict(
            await self.store.rows(
                select(Issue.status, func.count(Issue.id)).where(Issue.project_id == project_id).group_by(Issue.status)
            )
        )
        by_level = dict(
            await self.store.rows(
                select(Issue.level, func.count(Issue.id)).where(Issue.project_id == project_id).group_by(Issue.level)
            )
        )
        by_environment: Dict[str, int] = {}
        for (environments,) in await self.store.rows(select(Issue.environments).where(Issue.project_id == project_id)):
            for environment in environments or []:
                by_environment[environment] = by_environment.get(environment, 0) + 1

        new_today = await self.store.scalar(
            select(func.count(Issue.id)).where(Issue.project_id == project_id, Issue.first_seen >= today)
        )
        new_this_week = await self.store.scalar(
            select(func.count(Issue.id)).where(Issue.project_id == project_id, Issue.first_seen >= week_ago)
        )

        return {
            "total": sum(by_status.values()),
            "unresolved": by_status.get(IssueStatus.UNRESOLVED, 0),
            "resolved": by_status.get(IssueStatus.RESOLVED, 0),
            "ignored": by_status.get(IssueStatus.IGNORED, 0),
            "by_level": by_level,
            "by_environment": by_environment,
            "new_today": int(new_today or 0),
            "new_this_week": int(new_this_week or 0),
        }
