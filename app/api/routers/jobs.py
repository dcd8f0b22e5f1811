"""Jobs router -- job CRUD, SSE job runs and run history."""

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.errors import BadRequestError, NotFoundError
from app.repos import job_repo, result_repo
from app.services import job_service
from job_engine import JobBackend, JobStatus, JobTrigger, PreCheck

router = APIRouter(prefix="/api/jobs", tags=["jobs"])

_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateJobRequest(_CamelModel):
    """Create a job, or replace an existing one when ``id`` is given."""

    id: str | None = Field(None, description="Existing job id to update")
    name: str = Field(..., min_length=1, max_length=255)
    prompt: str = Field(..., min_length=1)
    project_paths: list[str] = Field(..., min_length=1)
    trigger: JobTrigger
    backend: JobBackend = JobBackend.CLAUDE
    pre_check: PreCheck | None = None
    max_parallel: int | None = Field(None, ge=1)


class RunJobRequest(_CamelModel):
    """Run a saved job (``jobId``) or an ad-hoc prompt."""

    job_id: str | None = None
    prompt: str | None = None
    project_paths: list[str] | None = None
    backend: JobBackend | None = None
    pre_check: PreCheck | None = None
    max_parallel: int | None = Field(None, ge=1)


class RunTriggerRequest(BaseModel):
    trigger: JobTrigger


def _sse(stream) -> StreamingResponse:
    return StreamingResponse(stream, media_type="text/event-stream", headers=_SSE_HEADERS)


# ---------------------------------------------------------------------------
# Job CRUD
# ---------------------------------------------------------------------------


@router.get("")
async def list_jobs(
    id: str | None = Query(None, description="Return a single job"),
    trigger: JobTrigger | None = Query(None),
    status: JobStatus | None = Query(None),
) -> dict:
    """List saved jobs, or fetch one by ``id``."""
    if id:
        job = await job_repo.get_job(id)
        if job is None:
            raise NotFoundError("Job not found")
        return job.model_dump(mode="json", by_alias=True, exclude_none=True)
    jobs = await job_repo.list_jobs(trigger=trigger, status=status)
    return {"jobs": [j.model_dump(mode="json", by_alias=True, exclude_none=True) for j in jobs]}


@router.post("")
async def save_job(body: CreateJobRequest) -> JSONResponse:
    """Create (201) or update (200) a job definition."""
    job, created = await job_repo.save_job(
        job_id=body.id,
        name=body.name,
        prompt=body.prompt,
        project_paths=body.project_paths,
        trigger=body.trigger,
        backend=body.backend,
        pre_check=body.pre_check,
        max_parallel=body.max_parallel,
    )
    return JSONResponse(
        job.model_dump(mode="json", by_alias=True, exclude_none=True),
        status_code=201 if created else 200,
    )


@router.delete("")
async def delete_job(id: str | None = Query(None)) -> dict:
    """Delete a job by ``id``."""
    if not id:
        raise BadRequestError("id query parameter is required")
    if not await job_repo.delete_job(id):
        raise NotFoundError("Job not found")
    return {"success": True}


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@router.post("/run")
async def run_job(body: RunJobRequest) -> StreamingResponse:
    """Run a job and stream its progress as server-sent events."""
    resolved = await job_service.resolve_run(
        job_id=body.job_id,
        prompt=body.prompt,
        project_paths=body.project_paths,
        backend=body.backend,
        pre_check=body.pre_check,
        max_parallel=body.max_parallel,
    )
    return _sse(job_service.stream_run(resolved))


@router.post("/run-trigger")
async def run_trigger(body: RunTriggerRequest) -> StreamingResponse:
    """Run every job with the given trigger, one job after another."""
    return _sse(job_service.stream_trigger(body.trigger))


@router.get("/runs")
async def list_active_runs() -> dict:
    return {"runs": job_service.active_run_ids()}


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str) -> dict:
    """Cancel an in-flight run; queued projects never start."""
    if not job_service.cancel_run(run_id):
        raise NotFoundError("Run not found")
    return {"success": True}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@router.get("/results")
async def list_results(unread: bool = Query(False)) -> dict:
    results = await result_repo.list_results(unread_only=unread)
    return {"results": [r.to_dict() for r in results]}


@router.get("/results/{result_id}")
async def get_result(result_id: str) -> dict:
    result = await result_repo.get_result(result_id)
    if result is None:
        raise NotFoundError("Result not found")
    return result.to_dict()


@router.post("/results/{result_id}/read")
async def mark_result_read(result_id: str) -> dict:
    result = await result_repo.mark_read(result_id)
    if result is None:
        raise NotFoundError("Result not found")
    return result.to_dict()


@router.delete("/results/{result_id}")
async def delete_result(result_id: str) -> dict:
    if not await result_repo.delete_result(result_id):
        raise NotFoundError("Result not found")
    return {"success": True}


@router.delete("/results")
async def clear_results() -> dict:
    removed = await result_repo.clear_results()
    return {"success": True, "removed": removed}
