"""
Notification channels.

Every channel implements the same contract, `send(config, payload, client)`,
and raises ChannelError when the channel is misconfigured or the remote
endpoint rejects the request. The set of channels is closed: CHANNELS maps
every ChannelType member to its implementation.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from faultline.config import settings
from faultline.errors import ChannelError

logger = logging.getLogger(__name__)

BOT_NAME = "Faultline"
USER_AGENT = "Faultline/1.0"
SIGNATURE_HEADER = "X-Faultline-Signature"

SEVERITY_COLORS = {
    "FATAL": "#8B0000",
    "ERROR": "#FF0000",
    "WARNING": "#FFA500",
    "INFO": "#0000FF",
    "DEBUG": "#808080",
}


class ChannelType(str, Enum):
    SLACK = "slack"
    DISCORD = "discord"
    TEAMS = "teams"
    TELEGRAM = "telegram"
    PAGERDUTY = "pagerduty"
    WEBHOOK = "webhook"
    EMAIL = "email"


URL_FIELDS = ("webhookUrl", "url", "apiUrl")
TEXT_FIELDS = ("botToken", "routingKey", "secret", "apiToken", "channel", "from", "severity", "parseMode")

REQUIRED_FIELDS = {
    ChannelType.SLACK: ("webhookUrl",),
    ChannelType.DISCORD: ("webhookUrl",),
    ChannelType.TEAMS: ("webhookUrl",),
    ChannelType.TELEGRAM: ("botToken", "chatId"),
    ChannelType.PAGERDUTY: ("routingKey",),
    ChannelType.WEBHOOK: ("url",),
    ChannelType.EMAIL: ("to",),
}


def check_config(channel: ChannelType, config: Any) -> Dict[str, Any]:
    """
    Validate an action config before anything is sent.
    Raises ChannelError naming the offending key.
    """
    if not isinstance(config, dict):
        raise ChannelError(channel.value, "config must be an object")
    for key in REQUIRED_FIELDS[channel]:
        if not config.get(key):
            raise ChannelError(channel.value, f"'{key}' is required")
    for key in URL_FIELDS:
        value = config.get(key)
        if value is not None and not (isinstance(value, str) and value.startswith(("http://", "https://"))):
            raise ChannelError(channel.value, f"'{key}' must be an http(s) URL")
    for key in TEXT_FIELDS:
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            raise ChannelError(channel.value, f"'{key}' must be a string")
    chat_id = config.get("chatId")
    if chat_id is not None and (isinstance(chat_id, bool) or not isinstance(chat_id, (str, int))):
        raise ChannelError(channel.value, "'chatId' must be a string or an integer")
    recipients = config.get("to")
    if recipients is not None:
        if isinstance(recipients, str):
            recipients = [recipients]
        if not isinstance(recipients, list) or not all(isinstance(r, str) for r in recipients):
            raise ChannelError(channel.value, "'to' must be an address or a list of addresses")
    headers = config.get("headers")
    if headers is not None and not (
        isinstance(headers, dict) and all(isinstance(k, str) and isinstance(v, str) for k, v in headers.items())
    ):
        raise ChannelError(channel.value, "'headers' must map strings to strings")
    return config


@dataclass
class NotificationPayload:
    alert_id: str
    project_id: str
    rule_id: str
    rule_name: str
    trigger_type: str
    title: str
    message: str
    issue: Optional[Any] = None  # faultline.models.Issue

    @property
    def level(self) -> str:
        return (getattr(self.issue, "level", None) or "ERROR").upper()

    def issue_summary(self) -> Optional[Dict[str, Any]]:
        if self.issue is None:
            return None
        return {
            "id": self.issue.id,
            "short_id": self.issue.short_id,
            "title": self.issue.title,
            "culprit": self.issue.culprit,
            "level": self.issue.level,
            "status": self.issue.status,
            "event_count": self.issue.event_count,
            "user_count": self.issue.user_count,
        }


def _require(config: Dict[str, Any], key: str, channel: "ChannelType") -> Any:
    value = config.get(key)
    if not value:
        raise ChannelError(channel.value, f"'{key}' is required")
    return value


async def _post(
    client: httpx.AsyncClient,
    channel: "ChannelType",
    url: str,
    body: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    try:
        response = await client.post(url, json=body, headers=headers)
    except httpx.HTTPError as e:
        raise ChannelError(channel.value, f"request failed: {str(e)}") from e
    if response.status_code >= 300:
        raise ChannelError(channel.value, f"API error: {response.status_code} - {response.text[:200]}")
    return response


class SlackChannel:
    type = ChannelType.SLACK

    def build(self, config: Dict[str, Any], payload: NotificationPayload) -> Dict[str, Any]:
        fields: List[Dict[str, Any]] = []
        if payload.issue is not None:
            fields = [
                {"title": "Issue", "value": payload.issue.short_id, "short": True},
                {"title": "Level", "value": payload.issue.level, "short": True},
                {"title": "Events", "value": str(payload.issue.event_count), "short": True},
                {"title": "Users", "value": str(payload.issue.user_count), "short": True},
            ]
        return {
            "channel": config.get("channel"),
            "username": BOT_NAME,
            "icon_emoji": ":warning:",
            "attachments": [
                {
                    "color": SEVERITY_COLORS.get(payload.level, "#FF0000"),
                    "title": payload.title,
                    "text": payload.message,
                    "fields": fields,
                    "footer": BOT_NAME,
                    "ts": str(int(datetime.now(timezone.utc).timestamp())),
                }
            ],
        }

    async def send(self, config: Dict[str, Any], payload: NotificationPayload, client: httpx.AsyncClient) -> None:
        url = _require(config, "webhookUrl", self.type)
        await _post(client, self.type, url, self.build(config, payload))


class DiscordChannel:
    type = ChannelType.DISCORD

    def build(self, config: Dict[str, Any], payload: NotificationPayload) -> Dict[str, Any]:
        fields: List[Dict[str, Any]] = []
        if payload.issue is not None:
            fields = [
                {"name": "Issue", "value": payload.issue.short_id, "inline": True},
                {"name": "Level", "value": payload.issue.level, "inline": True},
                {"name": "Events", "value": str(payload.issue.event_count), "inline": True},
            ]
        color = SEVERITY_COLORS.get(payload.level, "#FF0000")
        return {
            "username": BOT_NAME,
            "embeds": [
                {
                    "title": payload.title,
                    "description": payload.message,
                    "color": int(color.lstrip("#"), 16),
                    "fields": fields,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "footer": {"text": BOT_NAME},
                }
            ],
        }

    async def send(self, config: Dict[str, Any], payload: NotificationPayload, client: httpx.AsyncClient) -> None:
        url = _require(config, "webhookUrl", self.type)
        await _post(client, self.type, url, self.build(config, payload))


class TeamsChannel:
    type = ChannelType.TEAMS

    def build(self, config: Dict[str, Any], payload: NotificationPayload) -> Dict[str, Any]:
        facts = [
            {"title": "Project", "value": payload.project_id},
            {"title": "Rule", "value": payload.rule_name},
        ]
        if payload.issue is not None:
            facts += [
                {"title": "Issue", "value": payload.issue.short_id},
                {"title": "Level", "value": payload.issue.level},
                {"title": "Events", "value": str(payload.issue.event_count)},
                {"title": "Users", "value": str(payload.issue.user_count)},
            ]
        return {
            "type": "message",
            "attachments": [
                {
                    "contentType": "application/vnd.microsoft.card.adaptive",
                    "contentUrl": None,
                    "content": {
                        "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
                        "type": "AdaptiveCard",
                        "version": "1.4",
                        "body": [
                            {
                                "type": "TextBlock",
                                "text": f"{payload.level} Alert: {payload.title}",
                                "weight": "Bolder",
                                "size": "Medium",
                                "wrap": True,
                            },
                            {"type": "TextBlock", "text": payload.message, "wrap": True, "maxLines": 3},
                            {"type": "FactSet", "facts": facts},
                        ],
                    },
                }
            ],
        }

    async def send(self, config: Dict[str, Any], payload: NotificationPayload, client: httpx.AsyncClient) -> None:
        url = _require(config, "webhookUrl", self.type)
        await _post(client, self.type, url, self.build(config, payload))


class TelegramChannel:
    type = ChannelType.TELEGRAM
    base_url = "https://api.telegram.org"

    def build(self, config: Dict[str, Any], payload: NotificationPayload) -> Dict[str, Any]:
        lines = [f"<b>{payload.title}</b>", payload.message]
        if payload.issue is not None:
            lines.append(
                f"Issue: {payload.issue.short_id} | Level: {payload.issue.level} | Events: {payload.issue.event_count}"
            )
        return {
            "chat_id": _require(config, "chatId", self.type),
            "text": "\n\n".join(lines),
            "parse_mode": config.get("parseMode", "HTML"),
            "disable_web_page_preview": True,
        }

    async def send(self, config: Dict[str, Any], payload: NotificationPayload, client: httpx.AsyncClient) -> None:
        token = _require(config, "botToken", self.type)
        url = f"{self.base_url}/bot{token}/sendMessage"
        await _post(client, self.type, url, self.build(config, payload))


class PagerDutyChannel:
    type = ChannelType.PAGERDUTY
    api_url = "https://events.pagerduty.com/v2/enqueue"

    SEVERITIES = {
        "FATAL": "critical",
        "ERROR": "error",
        "WARNING": "warning",
        "INFO": "info",
        "DEBUG": "info",
    }

    def build(self, config: Dict[str, Any], payload: NotificationPayload) -> Dict[str, Any]:
        severity = config.get("severity") or self.SEVERITIES.get(payload.level, "error")
        issue = payload.issue_summary()
        # Same issue -> same incident; issue-less alerts dedupe per rule
        dedup_target = issue["id"] if issue else payload.rule_id
        return {
            "routing_key": _require(config, "routingKey", self.type),
            "event_action": "trigger",
            "dedup_key": f"faultline-{payload.project_id}-{dedup_target}",
            "payload": {
                "summary": payload.title[:1024],
                "severity": severity,
                "source": payload.project_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "class": payload.trigger_type,
                "custom_details": {
                    "message": payload.message,
                    "rule": payload.rule_name,
                    "issue": issue,
                },
            },
        }

    async def send(self, config: Dict[str, Any], payload: NotificationPayload, client: httpx.AsyncClient) -> None:
        await _post(client, self.type, config.get("apiUrl") or self.api_url, self.build(config, payload))


class WebhookChannel:
    type = ChannelType.WEBHOOK

    def build(self, config: Dict[str, Any], payload: NotificationPayload) -> Dict[str, Any]:
        return {
            "event": "alert.triggered",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "alert": {"id": payload.alert_id, "title": payload.title, "message": payload.message},
            "issue": payload.issue_summary(),
            "rule": {"id": payload.rule_id, "name": payload.rule_name, "trigger_type": payload.trigger_type},
        }

    @staticmethod
    def sign(secret: str, body: bytes) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    async def send(self, config: Dict[str, Any], payload: NotificationPayload, client: httpx.AsyncClient) -> None:
        url = _require(config, "url", self.type)
        body = self.build(config, payload)
        raw = json.dumps(body, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        headers.update(config.get("headers") or {})
        secret = config.get("secret")
        if secret:
            headers[SIGNATURE_HEADER] = self.sign(secret, raw)
        try:
            response = await client.post(url, content=raw, headers=headers)
        except httpx.HTTPError as e:
            raise ChannelError(self.type.value, f"request failed: {str(e)}") from e
        if response.status_code >= 300:
            raise ChannelError(self.type.value, f"API error: {response.status_code}")


class EmailChannel:
    """Email through an HTTP relay (EMAIL_API_URL); templating is left to the relay."""
    type = ChannelType.EMAIL

    def build(self, config: Dict[str, Any], payload: NotificationPayload) -> Dict[str, Any]:
        recipients = config.get("to")
        if isinstance(recipients, str):
            recipients = [recipients]
        if not recipients:
            raise ChannelError(self.type.value, "'to' is required")
        return {
            "from": config.get("from") or settings.EMAIL_FROM,
            "to": recipients,
            "subject": payload.title,
            "text": payload.message,
            "alert_id": payload.alert_id,
            "issue": payload.issue_summary(),
        }

    async def send(self, config: Dict[str, Any], payload: NotificationPayload, client: httpx.AsyncClient) -> None:
        url = config.get("apiUrl") or settings.EMAIL_API_URL
        if not url:
            raise ChannelError(self.type.value, "email relay not configured (EMAIL_API_URL)")
        headers = {}
        token = config.get("apiToken") or settings.EMAIL_API_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"
        await _post(client, self.type, url, self.build(config, payload), headers=headers)


CHANNELS = {
    ChannelType.SLACK: SlackChannel(),
    ChannelType.DISCORD: DiscordChannel(),
    ChannelType.TEAMS: TeamsChannel(),
    ChannelType.TELEGRAM: TelegramChannel(),
    ChannelType.PAGERDUTY: PagerDutyChannel(),
    ChannelType.WEBHOOK: WebhookChannel(),
    ChannelType.EMAIL: EmailChannel(),
}


def get_channel(channel_type: str):
    try:
        return CHANNELS[ChannelType(channel_type)]
    except ValueError:
        raise ChannelError(str(channel_type), "unknown notification channel")


async def send_notification(
    action: Dict[str, Any],
    payload: NotificationPayload,
    client: httpx.AsyncClient,
) -> None:
    """Deliver one rule action ({"type": ..., "config": {...}})."""
    channel = get_channel(action.get("type"))
    config = check_config(channel.type, action.get("config") or {})
    await channel.send(config, payload, client)
    logger.info(f"{channel.type.value} notification sent: alert_id={payload.alert_id}")
