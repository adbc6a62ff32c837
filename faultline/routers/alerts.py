"""
API endpoints for alert rules and triggered alerts.
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from faultline.errors import NotFoundError, StoreUnavailable
from faultline.schemas import (
    AlertDeliveryResponse,
    AlertResponse,
    AlertRuleCreate,
    AlertRuleResponse,
    AlertRuleUpdate,
)
from faultline.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["alerts"])


@router.post("/alert-rules", response_model=AlertRuleResponse, status_code=201)
async def create_alert_rule(rule: AlertRuleCreate, services: Services = Depends(get_services)):
    try:
        return await services.rules.create(rule.model_dump(mode="json"))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/alert-rules", response_model=List[AlertRuleResponse])
async def list_alert_rules(project_id: str, services: Services = Depends(get_services)):
    try:
        return await services.rules.list_by_project(project_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/alert-rules/{rule_id}", response_model=AlertRuleResponse)
async def get_alert_rule(rule_id: str, services: Services = Depends(get_services)):
    try:
        rule = await services.rules.get(rule_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Alert rule {rule_id} not found")
    return rule


@router.patch("/alert-rules/{rule_id}", response_model=AlertRuleResponse)
async def update_alert_rule(
    rule_id: str,
    changes: AlertRuleUpdate,
    services: Services = Depends(get_services),
):
    try:
        return await services.rules.update(rule_id, changes.model_dump(mode="json", exclude_unset=True))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.delete("/alert-rules/{rule_id}")
async def delete_alert_rule(rule_id: str, services: Services = Depends(get_services)):
    try:
        await services.rules.delete(rule_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"status": "deleted", "id": rule_id}


@router.post("/alert-rules/check-threshold/{project_id}", response_model=List[AlertResponse])
async def check_threshold(project_id: str, services: Services = Depends(get_services)):
    """
    Evaluate the project's THRESHOLD rules now; returns the alerts that fired.
    """
    try:
        return await services.alerts.check_threshold(project_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/alerts", response_model=List[AlertResponse])
async def list_alerts(
    project_id: Optional[str] = None,
    rule_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    services: Services = Depends(get_services),
):
    try:
        return await services.alerts.list_alerts(project_id=project_id, rule_id=rule_id, status=status, limit=limit)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/alerts/{alert_id}/deliveries", response_model=List[AlertDeliveryResponse])
async def list_deliveries(alert_id: str, services: Services = Depends(get_services)):
    try:
        await services.alerts.get_alert(alert_id)
        return await services.alerts.list_deliveries(alert_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(alert_id: str, services: Services = Depends(get_services)):
    try:
        return await services.alerts.acknowledge(alert_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(alert_id: str, services: Services = Depends(get_services)):
    try:
        return await services.alerts.resolve(alert_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
