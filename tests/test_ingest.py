"""
Tests for the ingestion pipeline
"""
from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from faultline.alerts.engine import AlertEngine
from faultline.cache import MemoryTimeline, NullCache
from faultline.ingest import IngestionPipeline
from faultline.issues import IssueAggregator
from faultline.models import IssueStatus, RawEvent, TriggerType
from faultline.queue import InlineDispatchQueue
from faultline.services import build_services
from faultline.store import NullStore


class RateLimitedCache(NullCache):
    async def check_rate_limit(self, key, limit, window_seconds):
        return {"allowed": False, "remaining": 0}


def type_error(make_event, prop: str, **overrides):
    return make_event(
        message=f"Cannot read property '{prop}' of undefined",
        exception={
            "type": "TypeError",
            "value": f"Cannot read property '{prop}' of undefined",
            "stacktrace": [{"filename": "app/user.ts", "function": "getUser", "lineno": 42}],
        },
        **overrides,
    )


@pytest.mark.asyncio
async def test_same_error_groups_into_one_issue(services, make_event):
    await services.pipeline.ingest("proj", type_error(make_event, "name"))
    await services.pipeline.ingest("proj", type_error(make_event, "email"))

    issues = await services.issues.list("proj")

    assert len(issues) == 1
    assert issues[0].event_count == 2
    assert issues[0].title == "TypeError: Cannot read property 'name' of undefined"


@pytest.mark.asyncio
async def test_ingest_returns_event_id_and_links_issue(services, make_event):
    event = make_event()

    event_id = await services.pipeline.ingest("proj", event)

    assert event_id == event["event_id"]
    issue = (await services.issues.list("proj"))[0]
    assert issue.sample_event_id == event["event_id"]
    assert await services.issues.count_users(issue) == 1


@pytest.mark.asyncio
async def test_invalid_event_is_rejected(services, make_event):
    event = make_event()
    del event["message"]

    with pytest.raises(ValidationError):
        await services.pipeline.ingest("proj", event)

    with pytest.raises(ValidationError):
        await services.pipeline.ingest("proj", make_event(level="catastrophic"))

    assert await services.issues.list("proj") == []


@pytest.mark.asyncio
async def test_duplicate_event_id_is_ignored(services, make_event):
    event = make_event()

    await services.pipeline.ingest("proj", event)
    await services.pipeline.ingest("proj", event)

    issue = (await services.issues.list("proj"))[0]
    assert issue.event_count == 1


@pytest.mark.asyncio
async def test_user_count_is_distinct(services, make_event):
    for user_id in ("user-1", "user-2", "user-1"):
        await services.pipeline.ingest("proj", make_event(user={"id": user_id}))
    await services.pipeline.ingest("proj", make_event(user=None))

    issue = (await services.issues.list("proj"))[0]
    assert issue.event_count == 4
    assert issue.user_count == 2


@pytest.mark.asyncio
async def test_new_issue_rule_fires_once(services, make_event, sent_requests):
    rule = await services.rules.create(
        {
            "project_id": "proj",
            "name": "New issues",
            "trigger_type": TriggerType.NEW_ISSUE,
            "actions": [{"type": "slack", "config": {"webhookUrl": "https://hooks.slack.test/T1"}}],
        }
    )

    await services.pipeline.ingest("proj", make_event())
    await services.pipeline.ingest("proj", make_event())

    alerts = await services.alerts.list_alerts(rule_id=rule.id)
    assert len(alerts) == 1
    assert alerts[0].title.startswith("New issue: TypeError")
    assert alerts[0].delivery_status == "success"
    assert len(sent_requests) == 1


@pytest.mark.asyncio
async def test_regression_fires_regression_rule(services, make_event, clock):
    rule = await services.rules.create(
        {"project_id": "proj", "name": "Regressions", "trigger_type": TriggerType.ISSUE_REGRESSION}
    )
    await services.pipeline.ingest("proj", make_event())
    issue = (await services.issues.list("proj"))[0]
    await services.issues.update_status(issue.id, IssueStatus.RESOLVED)

    clock.advance(hours=2)
    await services.pipeline.ingest("proj", make_event(timestamp=clock.now.isoformat()))

    reopened = await services.issues.get(issue.id)
    assert reopened.status == IssueStatus.UNRESOLVED
    alerts = await services.alerts.list_alerts(rule_id=rule.id)
    assert len(alerts) == 1
    assert alerts[0].issue_id == issue.id


@pytest.mark.asyncio
async def test_threshold_fires_once_per_cooldown(services, make_event):
    rule = await services.rules.create(
        {
            "project_id": "proj",
            "name": "Error burst",
            "trigger_type": TriggerType.THRESHOLD,
            "threshold": 100,
            "time_window_seconds": 60,
            "cooldown_minutes": 30,
        }
    )

    for _ in range(150):
        await services.pipeline.ingest("proj", make_event())

    alerts = await services.alerts.list_alerts(rule_id=rule.id)
    assert len(alerts) == 1
    assert alerts[0].title == "Threshold exceeded: Error burst"


@pytest.mark.asyncio
async def test_threshold_ignores_events_outside_window(services, make_event, clock):
    await services.rules.create(
        {
            "project_id": "proj",
            "name": "Burst",
            "trigger_type": TriggerType.THRESHOLD,
            "threshold": 3,
            "time_window_seconds": 60,
        }
    )
    old = (clock.now - timedelta(minutes=10)).isoformat()
    for _ in range(5):
        await services.pipeline.ingest("proj", make_event(timestamp=old))

    assert await services.alerts.list_alerts(project_id="proj") == []


@pytest.mark.asyncio
async def test_failing_channel_does_not_break_ingest(services, make_event):
    await services.rules.create(
        {
            "project_id": "proj",
            "name": "New issues",
            "trigger_type": TriggerType.NEW_ISSUE,
            "actions": [{"type": "webhook", "config": {"url": "https://fail.example.test/hook"}}],
        }
    )
    event = make_event()

    assert await services.pipeline.ingest("proj", event) == event["event_id"]

    alerts = await services.alerts.list_alerts(project_id="proj")
    assert alerts[0].delivery_status == "failed"
    assert len(await services.issues.list("proj")) == 1


@pytest.mark.asyncio
async def test_store_outage_still_acknowledges_event(failing_store, make_event, clock):
    cache = NullCache()
    pipeline = IngestionPipeline(
        failing_store,
        cache,
        IssueAggregator(failing_store, cache, clock=clock),
        AlertEngine(failing_store, cache, clock=clock),
        clock=clock,
    )
    event = make_event()

    assert await pipeline.ingest("proj", event) == event["event_id"]


@pytest.mark.asyncio
async def test_pipeline_runs_without_a_store(make_event, clock):
    store = NullStore()
    cache = NullCache()
    pipeline = IngestionPipeline(
        store,
        cache,
        IssueAggregator(store, cache, clock=clock),
        AlertEngine(store, cache, clock=clock),
        clock=clock,
    )
    event = make_event()

    assert await pipeline.ingest("proj", event) == event["event_id"]
    assert await pipeline.ingest_logs("proj", [{"level": "info", "message": "hello"}]) == 1


@pytest.mark.asyncio
async def test_rate_limited_events_are_still_accepted(store, http_client, clock, make_event):
    services = build_services(
        store,
        RateLimitedCache(),
        MemoryTimeline(),
        InlineDispatchQueue(backoff_seconds=0),
        http_client=http_client,
        clock=clock,
    )

    await services.pipeline.ingest("proj", make_event())

    assert len(await services.issues.list("proj")) == 1


@pytest.mark.asyncio
async def test_ingest_schedules_metrics_rollup(services, make_event, clock):
    await services.pipeline.ingest("proj", make_event())
    await services.pipeline.ingest("proj", make_event(level="warning"))

    windows = await services.metrics.get_series("proj")

    assert len(windows) == 1
    assert windows[0].minute == clock.now.replace(second=0, microsecond=0)
    assert windows[0].error_count == 1
    assert windows[0].warning_count == 1


@pytest.mark.asyncio
async def test_submit_event_deduplicates_by_event_id(services, make_event):
    event = make_event()

    await services.pipeline.submit_event("proj", event)
    await services.pipeline.submit_event("proj", event)

    stats = await services.queue.get_stats()
    assert stats["events"]["completed"] == 1
    assert (await services.issues.list("proj"))[0].event_count == 1


@pytest.mark.asyncio
async def test_submit_event_validates_before_queueing(services, make_event):
    with pytest.raises(ValidationError):
        await services.pipeline.submit_event("proj", make_event(message=""))

    stats = await services.queue.get_stats()
    assert stats["events"]["completed"] == 0


@pytest.mark.asyncio
async def test_logs_and_traces_feed_metrics(services, clock):
    minute = clock.now.replace(second=0, microsecond=0)
    ts = (minute + timedelta(seconds=5)).isoformat()

    accepted_logs = await services.pipeline.submit_logs(
        "proj",
        [
            {"level": "info", "message": "user logged in", "timestamp": ts},
            {"level": "warn", "message": "slow query", "timestamp": ts},
        ],
    )
    accepted_traces = await services.pipeline.submit_traces(
        "proj",
        [
            {"trace_id": "t1", "method": "get", "path": "/users", "status_code": 200, "duration": 10, "timestamp": ts},
            {"trace_id": "t2", "method": "GET", "path": "/users", "status_code": 500, "duration": 30, "timestamp": ts},
        ],
    )

    assert accepted_logs == 2
    assert accepted_traces == 2
    window = (await services.metrics.get_series("proj"))[0]
    assert window.log_count == 2
    assert window.request_count == 2
    assert window.status_2xx == 1
    assert window.status_5xx == 1
    assert window.avg_duration_ms == 20.0
    assert window.error_rate == 50.0


@pytest.mark.asyncio
async def test_deleting_issue_keeps_events_merged_into_another(services, store, make_event):
    await services.pipeline.ingest("proj", make_event(user={"id": "alice"}))
    await services.pipeline.ingest("proj", make_event(exception=None, message="Payment declined"))
    source = await services.issues.get_by_short_id("proj", "FL-1")
    target = await services.issues.get_by_short_id("proj", "FL-2")
    await services.issues.merge(target.id, [source.id])

    # Same fingerprint as the merged source, so a fresh issue is opened
    await services.pipeline.ingest("proj", make_event(user={"id": "bob"}))
    await services.pipeline.ingest("proj", make_event(user={"id": "carol"}))
    reopened = await services.issues.get_by_short_id("proj", "FL-3")
    assert reopened.event_count == 2
    assert reopened.user_count == 2

    await services.issues.delete(reopened.id)

    remaining = await store.scalar(select(func.count(RawEvent.id)).where(RawEvent.issue_id == target.id))
    assert remaining == 2
    assert (await services.issues.get(target.id)).event_count == 2
