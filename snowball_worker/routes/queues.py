"""
Queue inspection and control endpoints.
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from snowball_worker.bootstrap import ServiceContainer
from snowball_worker.routes.dependencies import get_services

router = APIRouter(prefix="/queues", tags=["queues"])

ListableStatus = Literal["waiting", "active", "delayed", "completed", "failed"]
CleanableStatus = Literal["completed", "failed"]


def _require_queue(services: ServiceContainer, queue: str) -> None:
    if queue not in services.queue.queue_names:
        raise HTTPException(status_code=404, detail=f"Unknown queue '{queue}'")


@router.get("")
async def queue_stats(services: ServiceContainer = Depends(get_services)):
    stats = await services.queue.all_stats()
    return {queue: counts.model_dump() for queue, counts in stats.items()}


@router.get("/{queue}/jobs")
async def list_jobs(
    queue: str,
    status: ListableStatus = Query("failed"),
    limit: int = Query(50, ge=1, le=500),
    services: ServiceContainer = Depends(get_services),
):
    _require_queue(services, queue)
    jobs = await services.queue.list_jobs(queue, status, limit)
    return {"queue": queue, "status": status, "jobs": [job.model_dump(mode="json") for job in jobs]}


@router.post("/{queue}/jobs/{job_id}/retry")
async def retry_job(
    queue: str,
    job_id: str,
    services: ServiceContainer = Depends(get_services),
):
    _require_queue(services, queue)
    job = await services.queue.retry_failed(queue, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No failed job '{job_id}' in '{queue}'")
    return {"queue": queue, "job": job.model_dump(mode="json")}


@router.post("/{queue}/pause")
async def pause_queue(queue: str, services: ServiceContainer = Depends(get_services)):
    _require_queue(services, queue)
    await services.queue.pause(queue)
    return {"queue": queue, "paused": True}


@router.post("/{queue}/resume")
async def resume_queue(queue: str, services: ServiceContainer = Depends(get_services)):
    _require_queue(services, queue)
    await services.queue.resume(queue)
    return {"queue": queue, "paused": False}


@router.post("/{queue}/clean")
async def clean_queue(
    queue: str,
    status: CleanableStatus = Query("completed"),
    grace_ms: int = Query(0, ge=0),
    limit: int = Query(1000, ge=1, le=10_000),
    services: ServiceContainer = Depends(get_services),
):
    _require_queue(services, queue)
    cleaned = await services.queue.clean(queue, status, grace_ms, limit)
    return {"queue": queue, "status": status, "cleaned": cleaned}
