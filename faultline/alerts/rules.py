"""
Alert rule management.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, desc, select, update

from faultline.errors import NotFoundError
from faultline.models import Alert, AlertDelivery, AlertRule

logger = logging.getLogger(__name__)


def _dump_actions(actions: Optional[List[Any]]) -> List[Dict[str, Any]]:
    """Rule actions as plain JSON dicts ({"type": "slack", "config": {...}})."""
    dumped = []
    for action in actions or []:
        if hasattr(action, "model_dump"):
            action = action.model_dump(mode="json")
        channel = action.get("type")
        dumped.append({"type": getattr(channel, "value", channel), "config": action.get("config") or {}})
    return dumped


class AlertRuleService:
    """CRUD and cooldown bookkeeping for alert rules."""

    def __init__(self, store):
        self.store = store

    async def create(self, data: Dict[str, Any]) -> AlertRule:
        values = dict(data)
        values["actions"] = _dump_actions(values.get("actions"))
        rule = AlertRule(**values)
        rule = await self.store.add(rule)
        logger.info(f"Alert rule created: id={rule.id}, project_id={rule.project_id}, trigger_type={rule.trigger_type}")
        return rule

    async def get(self, rule_id: str) -> Optional[AlertRule]:
        return await self.store.first(select(AlertRule).where(AlertRule.id == rule_id))

    async def _require(self, rule_id: str) -> AlertRule:
        rule = await self.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Alert rule {rule_id} not found")
        return rule

    async def list_by_project(self, project_id: str) -> List[AlertRule]:
        return await self.store.all(
            select(AlertRule).where(AlertRule.project_id == project_id).order_by(desc(AlertRule.created_at))
        )

    async def list_active(self, project_id: str, trigger_type: Optional[str] = None) -> List[AlertRule]:
        stmt = select(AlertRule).where(AlertRule.project_id == project_id, AlertRule.is_enabled.is_(True))
        if trigger_type:
            stmt = stmt.where(AlertRule.trigger_type == trigger_type)
        return await self.store.all(stmt)

    async def update(self, rule_id: str, changes: Dict[str, Any]) -> AlertRule:
        rule = await self._require(rule_id)
        for key, value in changes.items():
            if key == "actions":
                value = _dump_actions(value)
            setattr(rule, key, value)
        return await self.store.save(rule)

    async def set_enabled(self, rule_id: str, enabled: bool) -> AlertRule:
        return await self.update(rule_id, {"is_enabled": enabled})

    async def delete(self, rule_id: str) -> None:
        await self._require(rule_id)
        # SQLite does not enforce the FK cascade, so history goes explicitly
        alert_ids = select(Alert.id).where(Alert.alert_rule_id == rule_id)
        await self.store.execute(
            delete(AlertDelivery).where(AlertDelivery.alert_id.in_(alert_ids)),
            delete(Alert).where(Alert.alert_rule_id == rule_id),
            delete(AlertRule).where(AlertRule.id == rule_id),
        )
        logger.info(f"Alert rule deleted: id={rule_id}")

    async def update_last_triggered(self, rule_id: str, when: datetime) -> None:
        await self.store.execute(
            update(AlertRule).where(AlertRule.id == rule_id).values(last_triggered_at=when)
        )

    @staticmethod
    def is_in_cooldown(rule: AlertRule, now: datetime) -> bool:
        if rule.last_triggered_at is None:
            return False
        return now < rule.last_triggered_at + timedelta(minutes=rule.cooldown_minutes or 0)
