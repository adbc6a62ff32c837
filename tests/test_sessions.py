"""
Tests for active-session tracking
"""
import pytest

from faultline.cache import MemoryTimeline, NullCache
from faultline.errors import NotFoundError
from faultline.sessions import ActiveSessionTracker


@pytest.fixture
def tracker(store, clock):
    return ActiveSessionTracker(store, NullCache(), MemoryTimeline(), clock=clock, timeout_seconds=120)


@pytest.mark.asyncio
async def test_first_heartbeat_starts_session(tracker, clock):
    session = await tracker.heartbeat("proj", "s1", user_id="alice", platform="web", page_view=True)

    assert session.started_at == clock.now
    assert session.last_activity == clock.now
    assert session.is_active is True
    assert session.page_views == 1
    assert session.user_id == "alice"


@pytest.mark.asyncio
async def test_heartbeats_extend_session_and_count_page_views(tracker, clock):
    await tracker.heartbeat("proj", "s1", page_view=True)
    clock.advance(seconds=30)
    await tracker.heartbeat("proj", "s1")
    clock.advance(seconds=30)
    session = await tracker.heartbeat("proj", "s1", user_id="alice", page_view=True)

    assert session.page_views == 2
    assert session.last_activity == clock.now
    assert session.user_id == "alice"
    assert len(await tracker.list_sessions("proj")) == 1


@pytest.mark.asyncio
async def test_active_user_windows(tracker, clock):
    await tracker.heartbeat("proj", "s1", user_id="alice")
    clock.advance(minutes=10)
    await tracker.heartbeat("proj", "s2", user_id="bob")
    await tracker.heartbeat("proj", "s3")
    await tracker.heartbeat("proj", "s4", user_id="bob")

    counts = await tracker.get_active_users("proj")

    # Three live sessions; alice went quiet 10 minutes ago
    assert counts["now"] == 3
    assert counts["last_5m"] == 2
    assert counts["last_15m"] == 3
    assert counts["last_1h"] == 3
    assert counts["today"] == 3
    assert counts["this_month"] == 3


@pytest.mark.asyncio
async def test_active_users_are_per_project(tracker):
    await tracker.heartbeat("proj", "s1", user_id="alice")

    counts = await tracker.get_active_users("other")

    assert counts["now"] == 0
    assert counts["last_5m"] == 0


@pytest.mark.asyncio
async def test_end_session(tracker, clock):
    await tracker.heartbeat("proj", "s1")

    ended = await tracker.end_session("proj", "s1")

    assert ended.is_active is False
    assert ended.ended_at == clock.now
    assert tracker.is_live(ended) is False
    assert (await tracker.get_active_users("proj"))["now"] == 0


@pytest.mark.asyncio
async def test_end_unknown_session(tracker):
    with pytest.raises(NotFoundError):
        await tracker.end_session("proj", "missing")


@pytest.mark.asyncio
async def test_heartbeat_reopens_ended_session(tracker):
    await tracker.heartbeat("proj", "s1")
    await tracker.end_session("proj", "s1")

    session = await tracker.heartbeat("proj", "s1")

    assert session.is_active is True
    assert session.ended_at is None


@pytest.mark.asyncio
async def test_is_live_uses_timeout(tracker, clock):
    session = await tracker.heartbeat("proj", "s1")

    assert tracker.is_live(session, clock.advance(seconds=120)) is True
    assert tracker.is_live(session, clock.advance(seconds=1)) is False


@pytest.mark.asyncio
async def test_list_sessions_filters_by_liveness(tracker, clock):
    await tracker.heartbeat("proj", "old")
    clock.advance(minutes=5)
    await tracker.heartbeat("proj", "fresh")

    assert [s.session_id for s in await tracker.list_sessions("proj", active=True)] == ["fresh"]
    assert [s.session_id for s in await tracker.list_sessions("proj", active=False)] == ["old"]


@pytest.mark.asyncio
async def test_expire_stale(tracker, clock):
    await tracker.heartbeat("proj", "old")
    clock.advance(minutes=5)
    await tracker.heartbeat("proj", "fresh")

    assert await tracker.expire_stale() == 1

    sessions = {s.session_id: s for s in await tracker.list_sessions("proj")}
    assert sessions["old"].is_active is False
    assert sessions["fresh"].is_active is True
