"""
API endpoints for metric rollups and queue administration.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException
from faultline.errors import JobError, StoreUnavailable
from faultline.schemas import MetricWindowResponse, QueueStats
from faultline.services import Services, get_services
from faultline.utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["metrics"])


@router.get("/metrics/{project_id}", response_model=List[MetricWindowResponse])
async def get_metrics(
    project_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    services: Services = Depends(get_services),
):
    try:
        return await services.metrics.get_series(project_id, to_naive_utc(start), to_naive_utc(end))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/metrics/{project_id}/aggregate", response_model=MetricWindowResponse)
async def aggregate_metrics(
    project_id: str,
    minute: Optional[datetime] = None,
    services: Services = Depends(get_services),
):
    """
    Recompute one minute window now (defaults to the current minute).
    """
    try:
        return await services.metrics.aggregate(project_id, to_naive_utc(minute, default=utcnow()))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/queue/stats", response_model=Dict[str, QueueStats])
async def queue_stats(services: Services = Depends(get_services)):
    try:
        return await services.queue.get_stats()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get("/queue/{queue}/failed")
async def failed_jobs(queue: str, services: Services = Depends(get_services)):
    try:
        jobs = await services.queue.get_failed(queue)
    except JobError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [
        {
            "job_id": job.job_id,
            "attempts": job.attempts,
            "last_error": job.last_error,
            "payload": job.payload,
        }
        for job in jobs
    ]


@router.post("/queue/{queue}/retry")
async def retry_failed_jobs(
    queue: str,
    job_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    try:
        retried = await services.queue.retry_failed(queue, job_id=job_id)
    except JobError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"retried": retried}


@router.post("/queue/pause")
async def pause_queues(services: Services = Depends(get_services)):
    await services.queue.pause_all()
    return {"status": "paused"}


@router.post("/queue/resume")
async def resume_queues(services: Services = Depends(get_services)):
    await services.queue.resume_all()
    return {"status": "resumed"}
