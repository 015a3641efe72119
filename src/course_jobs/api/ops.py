"""Operational endpoints for queues, batches, runs and the cache."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from course_jobs.batch.units import parse_enrollment_csv
from course_jobs.container import Services
from course_jobs.exceptions import NotFoundError, ValidationError
from course_jobs.logging_config import logger
from course_jobs.queue.job import Job, JobStatus

router = APIRouter(prefix="/ops", tags=["ops"])


class WarmRequest(BaseModel):
    top_n: Optional[int] = Field(default=None, ge=1, le=1000)


class InvalidateRequest(BaseModel):
    tags: List[str] = Field(..., min_length=1)


def get_services(request: Request) -> Services:
    """Dependency returning the services built at startup."""
    return request.app.state.services


def _job_view(job: Job) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "job_class": job.job_class,
        "queue": job.queue,
        "status": job.status.value,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "idempotency_key": job.idempotency_key,
        "last_error": job.last_error,
        "run_at": job.run_at.isoformat(),
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }


def _not_found(e: NotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


def _bad_request(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


@router.get("/status")
async def get_status(
    batches: int = Query(10, ge=0, le=100),
    services: Services = Depends(get_services),
):
    """Queue depths and recently finished batches.

    Args:
        batches: Number of finished batches to include
        services: Application services

    Returns:
        Per-queue job counts by status and the last finished batches
    """
    recent = await services.batches.recent_batches(limit=batches) if batches else []
    return {
        "queues": await services.queue.stats(),
        "recent_batches": [batch.to_dict() for batch in recent],
    }


@router.get("/jobs")
async def list_jobs(
    status: Optional[JobStatus] = None,
    queue: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    """List jobs, optionally filtered by status and queue."""
    jobs = await services.queue.list_jobs(status=status, queue=queue, limit=limit)
    return {"jobs": [_job_view(job) for job in jobs]}


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, services: Services = Depends(get_services)):
    """Re-enqueue a dead job.

    Args:
        job_id: Dead job identifier
        services: Application services

    Returns:
        Id of the new job
    """
    try:
        new_job_id = await services.queue.retry_dead(job_id)
    except NotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    return {"job_id": new_job_id, "retried": job_id}


@router.post("/cache/warm", status_code=202)
async def warm_cache(request: WarmRequest, services: Services = Depends(get_services)):
    """Schedule cache warming for the most enrolled courses."""
    top_n = request.top_n or services.config.cache.warm_top_n
    job_ids = await services.queries.enqueue_warming(top_n)
    return {"job_ids": job_ids}


@router.post("/cache/invalidate")
async def invalidate_cache(request: InvalidateRequest, services: Services = Depends(get_services)):
    """Drop every cached entry under the given tags."""
    tags = sorted(set(request.tags))
    await services.invalidation.invalidate_derived(tags, reason="operator")
    logger.info(f"Operator invalidated tags {tags}")
    return {"tags": tags}


@router.post("/batches/enrollments", status_code=202)
async def submit_enrollment_csv(
    request: Request,
    semester: Optional[str] = None,
    chunk_size: Optional[int] = Query(None, ge=1),
    services: Services = Depends(get_services),
):
    """Start an enrollment batch from a CSV request body.

    The body is the CSV text with a student_id,course_id[,semester] header.

    Returns:
        Batch id and the number of units
    """
    try:
        text = (await request.body()).decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV body must be UTF-8")
    try:
        units = parse_enrollment_csv(text, default_semester=semester)
        batch_id = await services.batches.submit_batch("enrollment", units, chunk_size=chunk_size)
    except ValidationError as e:
        raise _bad_request(e)
    return {"batch_id": batch_id, "units": len(units)}


@router.get("/batches/{batch_id}")
async def get_batch(
    batch_id: str,
    chunks: bool = False,
    services: Services = Depends(get_services),
):
    """Batch progress with failure samples."""
    try:
        batch = await services.batches.get_batch_status(batch_id)
    except NotFoundError as e:
        raise _not_found(e)
    return batch.to_dict(include_chunks=chunks)


@router.post("/batches/{batch_id}/cancel")
async def cancel_batch(batch_id: str, services: Services = Depends(get_services)):
    try:
        batch = await services.batches.cancel_batch(batch_id)
    except NotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    return batch.to_dict()


@router.post("/batches/{batch_id}/resubmit", status_code=202)
async def resubmit_batch(batch_id: str, services: Services = Depends(get_services)):
    """Start a new batch from the failed units of a finished one."""
    try:
        new_batch_id = await services.batches.resubmit_failed(batch_id)
    except NotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    return {"batch_id": new_batch_id, "resubmitted_from": batch_id}


@router.get("/runs/{run_id}")
async def get_run(run_id: str, services: Services = Depends(get_services)):
    try:
        run = await services.orchestrator.get_run(run_id)
    except NotFoundError as e:
        raise _not_found(e)
    return run.to_dict()


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, services: Services = Depends(get_services)):
    """Stop a pipeline run. A stage already running is still recorded."""
    try:
        run = await services.orchestrator.cancel_run(run_id)
    except NotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    return run.to_dict()
