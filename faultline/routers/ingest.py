"""
SDK-facing ingestion endpoints.
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException
from faultline.config import settings
from faultline.errors import NotFoundError, StoreUnavailable
from faultline.schemas import (
    ActiveUsersResponse,
    ErrorEventIn,
    HeartbeatIn,
    IngestAccepted,
    LogEventIn,
    SessionResponse,
    TraceIn,
)
from faultline.services import Services, get_services

logger = logging.getLogger(__name__)


async def verify_ingest_key(project_id: str, x_faultline_key: Optional[str] = Header(None)):
    """
    Check the X-Faultline-Key header against INGEST_API_KEYS.
    Skipped when no keys are configured.
    """
    if not settings.INGEST_API_KEYS:
        return
    if not x_faultline_key:
        logger.warning(f"Missing ingest key for project {project_id}")
        raise HTTPException(status_code=401, detail="Missing X-Faultline-Key header")
    if settings.INGEST_API_KEYS.get(x_faultline_key) != project_id:
        logger.warning(f"Invalid ingest key for project {project_id}")
        raise HTTPException(status_code=401, detail="Invalid ingest key")


router = APIRouter(
    prefix="/api/{project_id}",
    tags=["ingest"],
    dependencies=[Depends(verify_ingest_key)],
)


@router.post("/events", response_model=IngestAccepted, status_code=202)
async def ingest_event(
    project_id: str,
    event: ErrorEventIn,
    services: Services = Depends(get_services),
):
    """
    Accept one error event. Validation failures return 422; storage or
    alerting problems never fail the request.
    """
    event_id = await services.pipeline.submit_event(project_id, event)
    return IngestAccepted(event_id=event_id)


@router.post("/logs", response_model=IngestAccepted, status_code=202)
async def ingest_logs(
    project_id: str,
    logs: List[LogEventIn],
    services: Services = Depends(get_services),
):
    count = await services.pipeline.submit_logs(project_id, logs)
    return IngestAccepted(count=count)


@router.post("/traces", response_model=IngestAccepted, status_code=202)
async def ingest_traces(
    project_id: str,
    traces: List[TraceIn],
    services: Services = Depends(get_services),
):
    count = await services.pipeline.submit_traces(project_id, traces)
    return IngestAccepted(count=count)


@router.post("/sessions/heartbeat", response_model=SessionResponse)
async def heartbeat(
    project_id: str,
    beat: HeartbeatIn,
    services: Services = Depends(get_services),
):
    try:
        return await services.sessions.heartbeat(
            project_id,
            beat.session_id,
            user_id=beat.user_id,
            platform=beat.platform,
            page_view=beat.page_view,
        )
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/sessions/{session_id}/end", response_model=SessionResponse)
async def end_session(
    project_id: str,
    session_id: str,
    services: Services = Depends(get_services),
):
    try:
        return await services.sessions.end_session(project_id, session_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(
    project_id: str,
    active: Optional[bool] = None,
    limit: int = 100,
    services: Services = Depends(get_services),
):
    try:
        return await services.sessions.list_sessions(project_id, active=active, limit=limit)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/active-users", response_model=ActiveUsersResponse)
async def active_users(project_id: str, services: Services = Depends(get_services)):
    try:
        return await services.sessions.get_active_users(project_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
