"""
API endpoints for browsing and managing issues.
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from faultline.errors import NotFoundError, StoreUnavailable
from faultline.schemas import IssueMergeRequest, IssueResponse, IssueStats, IssueStatusUpdate
from faultline.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/issues", tags=["issues"])


@router.get("", response_model=List[IssueResponse])
async def list_issues(
    project_id: str,
    status: Optional[str] = None,
    level: Optional[str] = None,
    environment: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    services: Services = Depends(get_services),
):
    """
    List issues of a project, most recently seen first.
    Returns empty list if no issues exist.
    """
    try:
        return await services.issues.list(
            project_id, status=status, level=level, environment=environment, limit=limit, offset=offset
        )
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/stats/{project_id}", response_model=IssueStats)
async def issue_stats(project_id: str, services: Services = Depends(get_services)):
    try:
        return await services.issues.get_stats(project_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/short/{project_id}/{short_id}", response_model=IssueResponse)
async def get_issue_by_short_id(project_id: str, short_id: str, services: Services = Depends(get_services)):
    try:
        return await services.issues.get_by_short_id(project_id, short_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/{issue_id}", response_model=IssueResponse)
async def get_issue(issue_id: str, services: Services = Depends(get_services)):
    try:
        return await services.issues.get(issue_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.put("/{issue_id}/status", response_model=IssueResponse)
async def update_issue_status(
    issue_id: str,
    update: IssueStatusUpdate,
    services: Services = Depends(get_services),
):
    try:
        return await services.issues.update_status(issue_id, update.status)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{issue_id}/merge", response_model=IssueResponse)
async def merge_issues(
    issue_id: str,
    request: IssueMergeRequest,
    services: Services = Depends(get_services),
):
    """
    Merge the source issues into this one.
    """
    try:
        return await services.issues.merge(issue_id, request.source_ids)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.delete("/{issue_id}")
async def delete_issue(issue_id: str, services: Services = Depends(get_services)):
    try:
        await services.issues.delete(issue_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"status": "deleted", "id": issue_id}
