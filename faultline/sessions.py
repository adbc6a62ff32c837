"""
Active-session tracking.

Heartbeats keep a session row alive and record the user (or the session id
for anonymous users) in a time-ordered set, from which sliding-window
distinct-user counts are read. The stored `is_active` flag is only cleared
by an explicit end or the periodic sweep, so `is_live` is the authoritative
liveness check.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import desc, func, select, update

from faultline.config import settings
from faultline.errors import NotFoundError, StoreUnavailable
from faultline.models import UserSession
from faultline.utils import utcnow

logger = logging.getLogger(__name__)

ACTIVE_USERS_CACHE_TTL = 30


class ActiveSessionTracker:
    def __init__(
        self,
        store,
        cache,
        timeline,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: int = settings.SESSION_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.cache = cache
        self.timeline = timeline
        self.clock = clock
        self.timeout = timedelta(seconds=timeout_seconds)

    @staticmethod
    def _timeline_key(project_id: str) -> str:
        return f"timeline:active-users:{project_id}"

    async def _find(self, project_id: str, session_id: str) -> Optional[UserSession]:
        return await self.store.first(
            select(UserSession).where(UserSession.project_id == project_id, UserSession.session_id == session_id)
        )

    async def heartbeat(
        self,
        project_id: str,
        session_id: str,
        user_id: Optional[str] = None,
        platform: Optional[str] = None,
        page_view: bool = False,
    ) -> UserSession:
        now = self.clock()
        session = await self._find(project_id, session_id)
        if session is None:
            try:
                session = await self.store.add(
                    UserSession(
                        project_id=project_id,
                        session_id=session_id,
                        user_id=user_id,
                        platform=platform,
                        started_at=now,
                        last_activity=now,
                        is_active=True,
                        page_views=1 if page_view else 0,
                    )
                )
            except StoreUnavailable:
                # Concurrent first heartbeat for the same session
                session = await self._find(project_id, session_id)
                if session is None:
                    raise
                session = await self._touch(session, now, user_id, platform, page_view)
        else:
            session = await self._touch(session, now, user_id, platform, page_view)

        await self.timeline.record(self._timeline_key(project_id), user_id or session_id, now)
        return session

    async def _touch(
        self,
        session: UserSession,
        now: datetime,
        user_id: Optional[str],
        platform: Optional[str],
        page_view: bool,
    ) -> UserSession:
        session.last_activity = now
        session.is_active = True
        session.ended_at = None
        if user_id:
            session.user_id = user_id
        if platform:
            session.platform = platform
        if page_view:
            session.page_views = (session.page_views or 0) + 1
        return await self.store.save(session)

    async def end_session(self, project_id: str, session_id: str) -> UserSession:
        session = await self._find(project_id, session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        session.is_active = False
        session.ended_at = self.clock()
        session = await self.store.save(session)
        logger.info(f"Session ended: project_id={project_id}, session_id={session_id}")
        return session

    def is_live(self, session: UserSession, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        if not session.is_active or session.ended_at is not None:
            return False
        return session.last_activity >= now - self.timeout

    async def list_sessions(
        self,
        project_id: str,
        active: Optional[bool] = None,
        limit: int = 100,
    ) -> List[UserSession]:
        sessions = await self.store.all(
            select(UserSession)
            .where(UserSession.project_id == project_id)
            .order_by(desc(UserSession.last_activity))
            .limit(limit)
        )
        if active is None:
            return sessions
        now = self.clock()
        return [session for session in sessions if self.is_live(session, now) == active]

    async def get_active_users(self, project_id: str) -> Dict[str, Any]:
        cache_key = f"active-users:{project_id}"
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return cached

        now = self.clock()
        live = await self.store.scalar(
            select(func.count(UserSession.id)).where(
                UserSession.project_id == project_id,
                UserSession.is_active.is_(True),
                UserSession.last_activity >= now - self.timeout,
            )
        )

        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        cutoffs = {
            "last_5m": now - timedelta(minutes=5),
            "last_15m": now - timedelta(minutes=15),
            "last_30m": now - timedelta(minutes=30),
            "last_1h": now - timedelta(hours=1),
            "today": midnight,
            "this_week": now - timedelta(days=7),
            "this_month": midnight.replace(day=1),
        }
        key = self._timeline_key(project_id)
        result = {"now": int(live or 0)}
        for name, cutoff in cutoffs.items():
            result[name] = await self.timeline.count_since(key, cutoff)

        await self.cache.set(cache_key, result, ttl_seconds=ACTIVE_USERS_CACHE_TTL)
        return result

    async def expire_stale(self) -> int:
        """Clear `is_active` on sessions without a heartbeat within the timeout."""
        cutoff = self.clock() - self.timeout
        expired = await self.store.execute(
            update(UserSession)
            .where(UserSession.is_active.is_(True), UserSession.last_activity < cutoff)
            .values(is_active=False)
        )
        if expired:
            logger.info(f"Marked {expired} stale session(s) inactive")
        return expired
