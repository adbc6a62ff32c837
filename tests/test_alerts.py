"""
Tests for alert rules, cooldown, notification fan-out and channels
"""
import hashlib
import hmac
import json
from datetime import datetime

import pytest

from faultline.alerts.channels import (
    CHANNELS,
    SIGNATURE_HEADER,
    ChannelType,
    NotificationPayload,
    check_config,
    get_channel,
)
from faultline.alerts.engine import AlertEngine
from faultline.alerts.rules import AlertRuleService
from faultline.cache import NullCache
from faultline.config import settings
from faultline.errors import ChannelError, NotFoundError
from faultline.models import AlertStatus, Issue, IssueStatus, TriggerType


@pytest.fixture
def rules(store):
    return AlertRuleService(store)


@pytest.fixture
def engine(store, rules, http_client, clock):
    return AlertEngine(store, NullCache(), rules=rules, http_client=http_client, clock=clock)


def rule_data(**overrides):
    data = {
        "project_id": "proj",
        "name": "Errors in production",
        "trigger_type": TriggerType.NEW_ISSUE,
        "cooldown_minutes": 30,
        "actions": [],
    }
    data.update(overrides)
    return data


def make_issue(**overrides):
    values = {
        "id": "issue-1",
        "project_id": "proj",
        "short_id": "FL-1",
        "title": "TypeError: boom",
        "culprit": "getUser (app/user.ts:42)",
        "level": "ERROR",
        "status": IssueStatus.UNRESOLVED,
        "event_count": 3,
        "user_count": 2,
        "environments": ["production"],
        "first_seen": datetime(2024, 1, 15, 11, 0, 0),
        "last_seen": datetime(2024, 1, 15, 12, 0, 0),
    }
    values.update(overrides)
    return Issue(**values)


def make_payload(issue=None):
    return NotificationPayload(
        alert_id="alert-1",
        project_id="proj",
        rule_id="rule-1",
        rule_name="Errors in production",
        trigger_type=TriggerType.NEW_ISSUE,
        title="New issue: TypeError: boom",
        message="FL-1 first seen",
        issue=issue,
    )


@pytest.mark.asyncio
async def test_cooldown_suppresses_repeat_firing(engine, rules, clock):
    rule = await rules.create(rule_data(trigger_type=TriggerType.THRESHOLD))

    first = await engine.trigger(rule, "Too many errors", "150 events")
    clock.advance(minutes=10)
    suppressed = await engine.trigger(rule, "Too many errors", "150 events")
    clock.advance(minutes=21)
    second = await engine.trigger(rule, "Too many errors", "150 events")

    assert first is not None
    assert suppressed is None
    assert second is not None
    alerts = await engine.list_alerts(rule_id=rule.id)
    assert len(alerts) == 2
    assert (await rules.get(rule.id)).last_triggered_at == clock.now


@pytest.mark.asyncio
async def test_cooldown_uses_stored_rule_state(engine, rules):
    rule = await rules.create(rule_data())
    stale_copy = await rules.get(rule.id)

    assert await engine.trigger(rule, "t", "m") is not None
    # The caller's copy predates the firing; the engine re-reads the rule
    stale_copy.last_triggered_at = None
    assert await engine.trigger(stale_copy, "t", "m") is None


@pytest.mark.asyncio
async def test_is_in_cooldown(rules, clock):
    rule = await rules.create(rule_data(cooldown_minutes=30))
    assert AlertRuleService.is_in_cooldown(rule, clock.now) is False

    await rules.update_last_triggered(rule.id, clock.now)
    rule = await rules.get(rule.id)

    assert AlertRuleService.is_in_cooldown(rule, clock.advance(minutes=29)) is True
    assert AlertRuleService.is_in_cooldown(rule, clock.advance(minutes=1)) is False


@pytest.mark.asyncio
async def test_disabled_rule_does_not_fire(engine, rules):
    rule = await rules.create(rule_data())
    await rules.set_enabled(rule.id, False)

    assert await engine.trigger(rule, "t", "m") is None
    assert await engine.check_new_issue(make_issue()) == []


@pytest.mark.asyncio
async def test_new_issue_rule_filters(engine, rules):
    await rules.create(rule_data(name="fatal only", level="FATAL"))
    await rules.create(rule_data(name="staging only", environment="staging"))
    matching = await rules.create(rule_data(name="production errors", level="ERROR", environment="production"))

    fired = await engine.check_new_issue(make_issue())

    assert [alert.alert_rule_id for alert in fired] == [matching.id]
    assert fired[0].issue_id == "issue-1"
    assert fired[0].status == AlertStatus.TRIGGERED


@pytest.mark.asyncio
async def test_regression_only_fires_regression_rules(engine, rules):
    await rules.create(rule_data(name="new issues"))
    regression = await rules.create(rule_data(name="regressions", trigger_type=TriggerType.ISSUE_REGRESSION))

    fired = await engine.check_regression(make_issue())

    assert [alert.alert_rule_id for alert in fired] == [regression.id]
    assert fired[0].title == "Regression: TypeError: boom"


@pytest.mark.asyncio
async def test_fan_out_records_each_channel(engine, rules, sent_requests):
    rule = await rules.create(
        rule_data(
            actions=[
                {"type": "slack", "config": {"webhookUrl": "https://hooks.slack.test/T1"}},
                {"type": "webhook", "config": {"url": "https://fail.example.test/hook"}},
            ]
        )
    )

    alert = await engine.trigger(rule, "New issue", "FL-1", issue=make_issue())

    assert len(sent_requests) == 2
    assert alert.delivery_status == "partial"
    assert alert.delivery_channel == "webhook"
    assert alert.delivered_at is not None

    deliveries = await engine.list_deliveries(alert.id)
    assert [(d.channel, d.status) for d in deliveries] == [("slack", "success"), ("webhook", "failed")]
    assert "500" in deliveries[1].error

    stored = await engine.get_alert(alert.id)
    assert stored.delivery_status == "partial"


@pytest.mark.asyncio
async def test_all_channels_failing(engine, rules):
    rule = await rules.create(
        rule_data(
            actions=[
                {"type": "discord", "config": {"webhookUrl": "https://fail.discord.test/api"}},
                {"type": "slack", "config": {}},
            ]
        )
    )

    alert = await engine.trigger(rule, "New issue", "FL-1")

    assert alert.delivery_status == "failed"
    assert alert.delivered_at is None
    deliveries = await engine.list_deliveries(alert.id)
    assert "webhookUrl" in deliveries[1].error


@pytest.mark.asyncio
async def test_malformed_action_does_not_block_other_channels(engine, rules, sent_requests):
    rule = await rules.create(
        rule_data(
            actions=[
                {"type": "slack", "config": {"webhookUrl": 12345}},
                {"type": "discord", "config": {"webhookUrl": "https://discord.test/api/webhooks/1"}},
            ]
        )
    )

    alert = await engine.trigger(rule, "New issue", "FL-1", issue=make_issue())

    assert len(sent_requests) == 1
    assert alert.delivery_status == "partial"
    deliveries = await engine.list_deliveries(alert.id)
    assert [(d.channel, d.status) for d in deliveries] == [("slack", "failed"), ("discord", "success")]
    assert "webhookUrl" in deliveries[0].error


class ExplodingChannel:
    type = ChannelType.TEAMS

    async def send(self, config, payload, client):
        raise RuntimeError("renderer exploded")


@pytest.mark.asyncio
async def test_unexpected_channel_error_is_recorded(engine, rules, sent_requests, monkeypatch):
    monkeypatch.setitem(CHANNELS, ChannelType.TEAMS, ExplodingChannel())
    rule = await rules.create(
        rule_data(
            actions=[
                {"type": "teams", "config": {"webhookUrl": "https://outlook.office.test/webhook"}},
                {"type": "slack", "config": {"webhookUrl": "https://hooks.slack.test/T1"}},
            ]
        )
    )

    alert = await engine.trigger(rule, "New issue", "FL-1")

    assert len(sent_requests) == 1
    deliveries = await engine.list_deliveries(alert.id)
    assert [(d.channel, d.status) for d in deliveries] == [("teams", "failed"), ("slack", "success")]
    assert deliveries[0].error == "RuntimeError: renderer exploded"


@pytest.mark.parametrize(
    "channel, config, key",
    [
        (ChannelType.SLACK, {"webhookUrl": 12345}, "webhookUrl"),
        (ChannelType.DISCORD, {"webhookUrl": "ftp://discord.test"}, "webhookUrl"),
        (ChannelType.TELEGRAM, {"botToken": 42, "chatId": "-1001"}, "botToken"),
        (ChannelType.TELEGRAM, {"botToken": "123:ABC", "chatId": ["-1001"]}, "chatId"),
        (ChannelType.PAGERDUTY, {"routingKey": "rk", "apiUrl": None, "severity": 3}, "severity"),
        (ChannelType.WEBHOOK, {"url": "https://hooks.example.test", "headers": {"X-Retry": 1}}, "headers"),
        (ChannelType.EMAIL, {"to": ["oncall@example.test", 7]}, "to"),
        (ChannelType.PAGERDUTY, {}, "routingKey"),
    ],
)
def test_check_config_rejects_bad_fields(channel, config, key):
    with pytest.raises(ChannelError) as excinfo:
        check_config(channel, config)

    assert key in str(excinfo.value)


def test_check_config_accepts_valid_configs():
    check_config(ChannelType.TELEGRAM, {"botToken": "123:ABC", "chatId": -1001})
    check_config(ChannelType.EMAIL, {"to": "oncall@example.test", "apiUrl": "https://relay.example.test"})
    check_config(ChannelType.WEBHOOK, {"url": "http://hooks.example.test", "headers": {"X-Env": "prod"}})


@pytest.mark.asyncio
async def test_custom_evaluator(engine, rules):
    spike = await rules.create(rule_data(trigger_type=TriggerType.SPIKE))
    await rules.create(rule_data(trigger_type=TriggerType.CUSTOM))

    assert await engine.check_custom("proj") == []

    async def spike_evaluator(alert_engine, rule, project_id):
        return ("Error spike", f"Spike detected in {project_id}")

    engine.register_evaluator("spike", spike_evaluator)
    fired = await engine.check_custom("proj")

    assert [alert.alert_rule_id for alert in fired] == [spike.id]
    assert fired[0].message == "Spike detected in proj"


def test_evaluators_only_for_extension_types(engine):
    async def evaluator(alert_engine, rule, project_id):
        return None

    with pytest.raises(ValueError):
        engine.register_evaluator(TriggerType.NEW_ISSUE, evaluator)


@pytest.mark.asyncio
async def test_acknowledge_and_resolve(engine, rules, clock):
    rule = await rules.create(rule_data())
    alert = await engine.trigger(rule, "t", "m")

    acknowledged = await engine.acknowledge(alert.id)
    assert acknowledged.status == AlertStatus.ACKNOWLEDGED
    assert acknowledged.acknowledged_at == clock.now

    resolved = await engine.resolve(alert.id)
    assert resolved.status == AlertStatus.RESOLVED

    with pytest.raises(NotFoundError):
        await engine.acknowledge("missing")


@pytest.mark.asyncio
async def test_rule_crud(rules):
    rule = await rules.create(
        rule_data(actions=[{"type": ChannelType.SLACK, "config": {"webhookUrl": "https://hooks.slack.test"}}])
    )
    assert rule.actions == [{"type": "slack", "config": {"webhookUrl": "https://hooks.slack.test"}}]

    updated = await rules.update(rule.id, {"name": "Renamed", "threshold": 5})
    assert updated.name == "Renamed"
    assert updated.threshold == 5

    assert [r.id for r in await rules.list_by_project("proj")] == [rule.id]
    assert await rules.list_active("proj", TriggerType.THRESHOLD) == []

    await rules.delete(rule.id)
    assert await rules.get(rule.id) is None
    with pytest.raises(NotFoundError):
        await rules.delete(rule.id)


@pytest.mark.asyncio
async def test_deleting_rule_removes_its_alerts(engine, rules):
    rule = await rules.create(rule_data())
    await engine.trigger(rule, "t", "m")

    await rules.delete(rule.id)

    assert await engine.list_alerts(project_id="proj") == []


def test_every_channel_type_is_registered():
    assert set(CHANNELS) == set(ChannelType)
    for channel_type, channel in CHANNELS.items():
        assert channel.type == channel_type


def test_unknown_channel():
    with pytest.raises(ChannelError):
        get_channel("carrier-pigeon")


@pytest.mark.asyncio
async def test_webhook_signature(http_client, sent_requests):
    channel = CHANNELS[ChannelType.WEBHOOK]

    await channel.send(
        {"url": "https://hooks.example.test/in", "secret": "s3cret"},
        make_payload(make_issue()),
        http_client,
    )

    request = sent_requests[0]
    expected = hmac.new(b"s3cret", request.content, hashlib.sha256).hexdigest()
    assert request.headers[SIGNATURE_HEADER] == expected
    body = json.loads(request.content)
    assert body["event"] == "alert.triggered"
    assert body["issue"]["short_id"] == "FL-1"


@pytest.mark.asyncio
async def test_webhook_without_secret_is_unsigned(http_client, sent_requests):
    await CHANNELS[ChannelType.WEBHOOK].send({"url": "https://hooks.example.test/in"}, make_payload(), http_client)

    assert SIGNATURE_HEADER not in sent_requests[0].headers


@pytest.mark.asyncio
async def test_telegram_request(http_client, sent_requests):
    await CHANNELS[ChannelType.TELEGRAM].send(
        {"botToken": "123456:ABC", "chatId": "-1001"},
        make_payload(make_issue()),
        http_client,
    )

    request = sent_requests[0]
    assert request.url.host == "api.telegram.org"
    assert request.url.path == "/bot123456:ABC/sendMessage"
    body = json.loads(request.content)
    assert body["chat_id"] == "-1001"
    assert body["parse_mode"] == "HTML"
    assert "FL-1" in body["text"]


@pytest.mark.asyncio
async def test_pagerduty_request(http_client, sent_requests):
    await CHANNELS[ChannelType.PAGERDUTY].send({"routingKey": "rk"}, make_payload(make_issue()), http_client)

    body = json.loads(sent_requests[0].content)
    assert body["routing_key"] == "rk"
    assert body["event_action"] == "trigger"
    assert body["dedup_key"] == "faultline-proj-issue-1"
    assert body["payload"]["severity"] == "error"


@pytest.mark.asyncio
async def test_teams_adaptive_card(http_client, sent_requests):
    await CHANNELS[ChannelType.TEAMS].send(
        {"webhookUrl": "https://outlook.office.test/webhook"}, make_payload(make_issue()), http_client
    )

    body = json.loads(sent_requests[0].content)
    attachment = body["attachments"][0]
    assert attachment["contentType"] == "application/vnd.microsoft.card.adaptive"
    assert attachment["content"]["type"] == "AdaptiveCard"


@pytest.mark.asyncio
async def test_email_requires_relay(http_client, monkeypatch):
    monkeypatch.setattr(settings, "EMAIL_API_URL", None)

    with pytest.raises(ChannelError):
        await CHANNELS[ChannelType.EMAIL].send({"to": "oncall@example.test"}, make_payload(), http_client)


@pytest.mark.asyncio
async def test_email_posts_to_relay(http_client, sent_requests, monkeypatch):
    monkeypatch.setattr(settings, "EMAIL_API_URL", "https://mail-relay.example.test/send")

    await CHANNELS[ChannelType.EMAIL].send({"to": "oncall@example.test"}, make_payload(), http_client)

    body = json.loads(sent_requests[0].content)
    assert body["to"] == ["oncall@example.test"]
    assert body["subject"] == "New issue: TypeError: boom"


@pytest.mark.asyncio
async def test_non_2xx_raises_channel_error(http_client):
    with pytest.raises(ChannelError) as exc_info:
        await CHANNELS[ChannelType.SLACK].send(
            {"webhookUrl": "https://fail.slack.test/hook"}, make_payload(), http_client
        )
    assert exc_info.value.channel == "slack"
