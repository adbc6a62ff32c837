"""
Alert evaluation and notification fan-out.

Rules are evaluated independently: a failing rule or channel is logged and
never stops the others. A rule fires at most once per cooldown window; the
check and the `last_triggered_at` write happen under an advisory lock so two
workers cannot both fire the same rule.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import desc, func, select, update

from faultline.alerts.channels import NotificationPayload, send_notification
from faultline.alerts.rules import AlertRuleService
from faultline.config import settings
from faultline.errors import ChannelError, FaultlineError, NotFoundError, StoreUnavailable
from faultline.models import (
    Alert,
    AlertDelivery,
    AlertRule,
    AlertStatus,
    Issue,
    RawEvent,
    TriggerType,
)
from faultline.utils import utcnow

logger = logging.getLogger(__name__)

ALERT_LOCK_TTL = 30

# (engine, rule, project_id) -> (title, message) or None
Evaluator = Callable[["AlertEngine", AlertRule, str], Awaitable[Optional[Tuple[str, str]]]]


def rule_matches_issue(rule: AlertRule, issue: Issue) -> bool:
    """Optional level/environment filters of a rule against an issue."""
    if rule.level and (issue.level or "").upper() != rule.level.upper():
        return False
    if rule.environment and rule.environment not in (issue.environments or []):
        return False
    return True


class AlertEngine:
    def __init__(
        self,
        store,
        cache,
        rules: Optional[AlertRuleService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.rules = rules or AlertRuleService(store)
        self.http_client = http_client
        self.clock = clock
        self._evaluators: Dict[str, Evaluator] = {}

    def register_evaluator(self, trigger_type: str, evaluator: Evaluator) -> None:
        """Plug in evaluation for SPIKE or CUSTOM rules."""
        trigger_type = trigger_type.upper()
        if trigger_type not in (TriggerType.SPIKE, TriggerType.CUSTOM):
            raise ValueError(f"Evaluators can only be registered for SPIKE or CUSTOM rules, got {trigger_type}")
        self._evaluators[trigger_type] = evaluator

    async def trigger(
        self,
        rule: AlertRule,
        title: str,
        message: str,
        issue: Optional[Issue] = None,
    ) -> Optional[Alert]:
        """
        Fire a rule unless it is disabled or cooling down.

        Returns the created Alert, or None when the firing was suppressed.
        """
        async with self.cache.lock(
            f"alert-rule:{rule.id}", ttl_seconds=ALERT_LOCK_TTL, wait_seconds=settings.LOCK_WAIT_SECONDS
        ):
            # Another worker may have fired it since the caller loaded the rule
            current = await self.rules.get(rule.id) or rule
            if not current.is_enabled:
                return None

            now = self.clock()
            if self.rules.is_in_cooldown(current, now):
                logger.info(f"Alert rule {current.id} in cooldown, suppressed: {title}")
                return None

            alert = await self.store.add(
                Alert(
                    alert_rule_id=current.id,
                    project_id=current.project_id,
                    issue_id=issue.id if issue is not None else None,
                    title=title,
                    message=message,
                    status=AlertStatus.TRIGGERED,
                    triggered_at=now,
                )
            )
            await self.rules.update_last_triggered(current.id, now)
            rule.last_triggered_at = now

        logger.info(f"Alert triggered: alert_id={alert.id}, rule_id={current.id}, project_id={current.project_id}")
        await self._deliver(current, alert, issue)
        return alert

    async def _deliver(self, rule: AlertRule, alert: Alert, issue: Optional[Issue]) -> None:
        actions = rule.actions or []
        if not actions:
            return

        payload = NotificationPayload(
            alert_id=alert.id,
            project_id=rule.project_id,
            rule_id=rule.id,
            rule_name=rule.name,
            trigger_type=rule.trigger_type,
            title=alert.title,
            message=alert.message,
            issue=issue,
        )

        if self.http_client is not None:
            outcomes = await self._send_all(actions, payload, self.http_client)
        else:
            async with httpx.AsyncClient(timeout=settings.NOTIFICATION_TIMEOUT) as client:
                outcomes = await self._send_all(actions, payload, client)

        succeeded = [o for o in outcomes if o["status"] == "success"]
        if len(succeeded) == len(outcomes):
            alert.delivery_status = "success"
        elif succeeded:
            alert.delivery_status = "partial"
        else:
            alert.delivery_status = "failed"
        alert.delivery_channel = outcomes[-1]["channel"]
        alert.delivered_at = succeeded[0]["attempted_at"] if succeeded else None

        try:
            await self.store.insert(
                AlertDelivery,
                [dict(alert_id=alert.id, **outcome) for outcome in outcomes],
            )
            await self.store.execute(
                update(Alert)
                .where(Alert.id == alert.id)
                .values(
                    delivery_status=alert.delivery_status,
                    delivery_channel=alert.delivery_channel,
                    delivered_at=alert.delivered_at,
                )
            )
        except StoreUnavailable as e:
            logger.error(f"Failed to record deliveries for alert {alert.id}: {str(e)}")

    async def _send_all(
        self,
        actions: List[Dict[str, Any]],
        payload: NotificationPayload,
        client: httpx.AsyncClient,
    ) -> List[Dict[str, Any]]:
        outcomes = []
        for action in actions:
            channel = str(action.get("type")) if isinstance(action, dict) else "unknown"
            error = None
            try:
                await send_notification(action, payload, client)
            except (ChannelError, httpx.HTTPError) as e:
                error = str(e)
                logger.error(f"Notification via {channel} failed for alert {payload.alert_id}: {error}")
            except Exception as e:
                error = f"{type(e).__name__}: {str(e)}"
                logger.error(f"Notification via {channel} crashed for alert {payload.alert_id}: {error}", exc_info=True)
            outcomes.append(
                {
                    "channel": channel,
                    "status": "failed" if error else "success",
                    "error": error,
                    "attempted_at": self.clock(),
                }
            )
        return outcomes

    async def _fire_matching(self, issue: Issue, trigger_type: str, title: str, message: str) -> List[Alert]:
        fired = []
        rules = await self.rules.list_active(issue.project_id, trigger_type)
        for rule in rules:
            if not rule_matches_issue(rule, issue):
                continue
            try:
                alert = await self.trigger(rule, title, message, issue=issue)
            except FaultlineError as e:
                logger.error(f"Alert rule {rule.id} failed: {str(e)}")
                continue
            if alert is not None:
                fired.append(alert)
        return fired

    async def check_new_issue(self, issue: Issue) -> List[Alert]:
        title = f"New issue: {issue.title}"
        message = f"{issue.short_id} first seen at {issue.first_seen.isoformat()}"
        if issue.culprit:
            message = f"{message} in {issue.culprit}"
        return await self._fire_matching(issue, TriggerType.NEW_ISSUE, title, message)

    async def check_regression(self, issue: Issue) -> List[Alert]:
        title = f"Regression: {issue.title}"
        message = f"{issue.short_id} was resolved and occurred again at {issue.last_seen.isoformat()}"
        return await self._fire_matching(issue, TriggerType.ISSUE_REGRESSION, title, message)

    async def count_events(self, rule: AlertRule, project_id: str, since: datetime) -> int:
        stmt = select(func.count(RawEvent.id)).where(
            RawEvent.project_id == project_id,
            RawEvent.timestamp >= since,
        )
        if rule.level:
            stmt = stmt.where(RawEvent.level == rule.level.upper())
        if rule.environment:
            stmt = stmt.where(RawEvent.environment == rule.environment)
        return int(await self.store.scalar(stmt) or 0)

    async def check_threshold(self, project_id: str) -> List[Alert]:
        """Fire THRESHOLD rules whose trailing-window event count reached the threshold."""
        fired = []
        rules = await self.rules.list_active(project_id, TriggerType.THRESHOLD)
        for rule in rules:
            try:
                since = self.clock() - timedelta(seconds=rule.time_window_seconds)
                count = await self.count_events(rule, project_id, since)
                if count < rule.threshold:
                    continue
                alert = await self.trigger(
                    rule,
                    f"Threshold exceeded: {rule.name}",
                    f"{count} events in the last {rule.time_window_seconds}s (threshold {rule.threshold})",
                )
            except FaultlineError as e:
                logger.error(f"Threshold check failed for rule {rule.id}: {str(e)}")
                continue
            if alert is not None:
                fired.append(alert)
        return fired

    async def check_custom(self, project_id: str) -> List[Alert]:
        """Run registered evaluators for SPIKE and CUSTOM rules."""
        fired = []
        for trigger_type in (TriggerType.SPIKE, TriggerType.CUSTOM):
            evaluator = self._evaluators.get(trigger_type)
            if evaluator is None:
                continue
            for rule in await self.rules.list_active(project_id, trigger_type):
                try:
                    result = await evaluator(self, rule, project_id)
                    if not result:
                        continue
                    title, message = result
                    alert = await self.trigger(rule, title, message)
                except FaultlineError as e:
                    logger.error(f"{trigger_type} evaluation failed for rule {rule.id}: {str(e)}")
                    continue
                if alert is not None:
                    fired.append(alert)
        return fired

    async def get_alert(self, alert_id: str) -> Alert:
        alert = await self.store.first(select(Alert).where(Alert.id == alert_id))
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    async def acknowledge(self, alert_id: str) -> Alert:
        alert = await self.get_alert(alert_id)
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_at = self.clock()
        return await self.store.save(alert)

    async def resolve(self, alert_id: str) -> Alert:
        alert = await self.get_alert(alert_id)
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = self.clock()
        return await self.store.save(alert)

    async def list_alerts(
        self,
        project_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Alert]:
        stmt = select(Alert)
        if project_id:
            stmt = stmt.where(Alert.project_id == project_id)
        if rule_id:
            stmt = stmt.where(Alert.alert_rule_id == rule_id)
        if status:
            stmt = stmt.where(Alert.status == status.upper())
        return await self.store.all(stmt.order_by(desc(Alert.triggered_at)).limit(limit))

    async def list_deliveries(self, alert_id: str) -> List[AlertDelivery]:
        return await self.store.all(
            select(AlertDelivery).where(AlertDelivery.alert_id == alert_id).order_by(AlertDelivery.id)
        )
