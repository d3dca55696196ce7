"""API endpoints for CRM intelligence analysis jobs.

Prefix: /intelligence
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import ValidationError

from app.core.intelligence_errors import JobNotFoundError, JobValidationError
from app.core.logging import get_logger
from app.core.schemas_intelligence_jobs import (
    BatchAnalysisRequest,
    BatchRerunRequest,
    BatchSubmitResponse,
    EntityType,
    JobStatus,
    JobSummary,
    SubmitAnalysisRequest,
)
from app.services.intelligence_runner import IntelligenceRunner, get_intelligence_runner

logger = get_logger(__name__)

router = APIRouter(prefix="/intelligence")


def _parse(model: type, payload: Any):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {first.get('msg')}") from e


# =============================================================================
# Submission
# =============================================================================


@router.post("/jobs")
async def submit_analysis(
    payload: dict[str, Any] = Body(...),
    runner: IntelligenceRunner = Depends(get_intelligence_runner),
) -> dict:
    """
    Start an analysis for one entity.

    Passing max_retries or initial_delay_ms enables whole-run retry on rate limits.
    """
    request = _parse(SubmitAnalysisRequest, payload)

    try:
        if request.max_retries is not None or request.initial_delay_ms is not None:
            job = await runner.submit_with_retry(
                request.entity_type,
                request.entity_id,
                request.entity_name,
                max_retries=request.max_retries,
                initial_delay_ms=request.initial_delay_ms,
                user_id=request.user_id,
            )
        else:
            job = await runner.submit(
                request.entity_type, request.entity_id, request.entity_name, user_id=request.user_id
            )
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception(f"Failed to submit analysis: {e}")
        raise HTTPException(status_code=500, detail="Failed to submit analysis") from e

    return {"success": True, "job": JobSummary.from_job(job).model_dump(mode="json")}


@router.post("/jobs/batch", response_model=BatchSubmitResponse)
async def submit_batch_analysis(
    payload: dict[str, Any] = Body(...),
    runner: IntelligenceRunner = Depends(get_intelligence_runner),
) -> BatchSubmitResponse:
    """Start analyses for up to 50 entities. Invalid batches create nothing."""
    request = _parse(BatchAnalysisRequest, payload)

    try:
        jobs = await runner.submit_batch(request.jobs, user_id=request.user_id)
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception(f"Failed to submit batch: {e}")
        raise HTTPException(status_code=500, detail="Failed to submit batch") from e

    return BatchSubmitResponse(
        jobs=[JobSummary.from_job(job) for job in jobs],
        count=len(jobs),
        reruns=sum(1 for job in jobs if job.is_rerun),
    )


@router.post("/jobs/batch-rerun", response_model=BatchSubmitResponse)
async def rerun_batch_analysis(
    payload: dict[str, Any] = Body(...),
    runner: IntelligenceRunner = Depends(get_intelligence_runner),
) -> BatchSubmitResponse:
    """Re-run a batch with exponential-backoff retry on rate limits."""
    request = _parse(BatchRerunRequest, payload)

    try:
        jobs = await runner.submit_batch_with_retry(
            request.jobs,
            max_retries=request.max_retries,
            initial_delay_ms=request.initial_delay_ms,
            user_id=request.user_id,
        )
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception(f"Failed to submit batch re-run: {e}")
        raise HTTPException(status_code=500, detail="Failed to submit batch re-run") from e

    return BatchSubmitResponse(
        jobs=[JobSummary.from_job(job) for job in jobs],
        count=len(jobs),
        reruns=sum(1 for job in jobs if job.is_rerun),
        retry_config=jobs[0].retry_config if jobs else None,
    )


# =============================================================================
# Queries
# =============================================================================


@router.get("/jobs")
async def list_analysis_jobs(
    entity_type: EntityType | None = Query(None, description="Filter by entity type"),
    status: JobStatus | None = Query(None, description="Filter by job status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    runner: IntelligenceRunner = Depends(get_intelligence_runner),
) -> dict:
    """List jobs, newest first."""
    try:
        jobs = runner.list_jobs(entity_type=entity_type, status=status, limit=limit, offset=offset)
    except Exception as e:
        logger.exception(f"Failed to list jobs: {e}")
        raise HTTPException(status_code=500, detail="Failed to list jobs") from e

    return {
        "jobs": [job.model_dump(mode="json", exclude={"history", "logs"}) for job in jobs],
        "count": len(jobs),
        "limit": limit,
        "offset": offset,
    }


@router.get("/jobs/{job_id}")
async def get_analysis_job(
    job_id: str,
    runner: IntelligenceRunner = Depends(get_intelligence_runner),
) -> dict:
    """Full job record plus a summary of the job it re-ran, if any."""
    try:
        job = runner.get_job(job_id)
        previous = runner.get_previous_job(job)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except Exception as e:
        logger.exception(f"Failed to get job {job_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve job") from e

    previous_summary = None
    if previous:
        previous_summary = {
            "id": previous.id,
            "version": previous.version,
            "status": previous.status.value,
            "completed_at": previous.completed_at.isoformat() if previous.completed_at else None,
            "result": previous.result,
        }

    return {
        "job": job.model_dump(mode="json"),
        "previous_job_summary": previous_summary,
    }


@router.delete("/jobs/{job_id}")
async def cancel_analysis_job(
    job_id: str,
    runner: IntelligenceRunner = Depends(get_intelligence_runner),
) -> dict:
    """Cancel a pending or running job. Finished jobs return 409."""
    try:
        outcome = runner.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except Exception as e:
        logger.exception(f"Failed to cancel job {job_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to cancel job") from e

    if not outcome.cancelled:
        raise HTTPException(status_code=409, detail=outcome.reason or "Job cannot be cancelled")

    return {"success": True, "job": outcome.job.model_dump(mode="json", exclude={"history"})}


@router.get("/entity/{entity_type}/{entity_id}")
async def get_entity_timeline(
    entity_type: str,
    entity_id: str,
    limit: int = Query(50, ge=1, le=200),
    runner: IntelligenceRunner = Depends(get_intelligence_runner),
) -> dict:
    """Analysis timeline for one entity, most recent first."""
    try:
        timeline = runner.get_entity_timeline(entity_type, entity_id, limit=limit)
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception(f"Failed to load timeline for {entity_type} {entity_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load entity timeline") from e

    return timeline.model_dump(mode="json")
