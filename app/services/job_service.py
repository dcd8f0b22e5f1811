"""Job service -- runs jobs through the engine and relays progress as SSE.

The engine reports progress through a synchronous callback.  The relay
turns that into an async stream: the run executes in its own task,
events go through an ``asyncio.Queue`` and the response stream
drains the queue into ``data: <json>\\n\\n`` frames.

Every run gets a run id (``run_<ms>_<rand>``) that tags each event,
names the persisted ``JobResult`` and can be used to cancel the run.
A saved job can only have one run in flight at a time.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.config import execution_options, settings
from app.errors import BadRequestError, ConflictError, NotFoundError
from app.repos import job_repo, result_repo
from app.repos.result_repo import ADHOC_JOB_ID, JobResult
from job_engine import (
    CancellationToken,
    DoneEvent,
    ErrorEvent,
    JobBackend,
    JobStatus,
    JobStreamEvent,
    JobTrigger,
    PreCheck,
    all_skipped,
    event_to_json,
    generate_run_id,
    run_job_on_projects,
    run_status,
    summarize,
)
from job_engine.contracts import utc_now
from job_engine.summary import EventSink, safe_sink

logger = logging.getLogger(__name__)

ADHOC_JOB_NAME = "Ad-hoc Job"

# Final job status for each run status.
_JOB_STATUS_AFTER_RUN: dict[str, JobStatus] = {
    "error": JobStatus.ERROR,
    "needs-human": JobStatus.NEEDS_HUMAN,
    "complete": JobStatus.IDLE,
}


@dataclass(frozen=True)
class ResolvedRun:
    """Everything needed to start a run, whether saved or ad-hoc."""

    job_id: str | None
    job_name: str
    prompt: str
    project_paths: list[str]
    backend: JobBackend
    pre_check: PreCheck | None
    max_parallel: int


@dataclass
class _ActiveRun:
    run_id: str
    job_id: str | None
    token: CancellationToken


# run_id -> in-flight run
_active_runs: dict[str, _ActiveRun] = {}
# job ids with a run in flight
_running_jobs: set[str] = set()
# keeps relay tasks referenced until they finish
_background: set[asyncio.Task] = set()


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def with_default_policy(pre_check: PreCheck | None) -> PreCheck | None:
    """Apply ``PRECHECK_FAILURE_POLICY`` to a pre-check that left onError unset."""
    if pre_check is None or pre_check.on_error is not None:
        return pre_check
    return pre_check.model_copy(update={"on_error": settings.PRECHECK_FAILURE_POLICY})


async def resolve_run(
    *,
    job_id: str | None = None,
    prompt: str | None = None,
    project_paths: list[str] | None = None,
    backend: JobBackend | None = None,
    pre_check: PreCheck | None = None,
    max_parallel: int | None = None,
) -> ResolvedRun:
    """Resolve a run request to either a saved job or an ad-hoc run.

    Raises
    ------
    NotFoundError
        *job_id* names no saved job.
    BadRequestError
        Ad-hoc request without a prompt or without project paths.
    """
    if job_id:
        job = await job_repo.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return ResolvedRun(
            job_id=job.id,
            job_name=job.name,
            prompt=job.prompt,
            project_paths=list(job.project_paths),
            backend=job.backend,
            pre_check=with_default_policy(job.pre_check),
            max_parallel=job.max_parallel or settings.DEFAULT_MAX_PARALLEL,
        )

    if not prompt or not project_paths:
        raise BadRequestError("prompt and projectPaths required for ad-hoc jobs")
    return ResolvedRun(
        job_id=None,
        job_name=ADHOC_JOB_NAME,
        prompt=prompt,
        project_paths=list(project_paths),
        backend=backend or JobBackend.CLAUDE,
        pre_check=with_default_policy(pre_check),
        max_parallel=max_parallel or settings.DEFAULT_MAX_PARALLEL,
    )


# ---------------------------------------------------------------------------
# Run bookkeeping
# ---------------------------------------------------------------------------


def _claim(resolved: ResolvedRun, token: CancellationToken) -> _ActiveRun:
    if resolved.job_id is not None:
        if resolved.job_id in _running_jobs:
            raise ConflictError(f"Job {resolved.job_id} is already running")
        _running_jobs.add(resolved.job_id)
    active = _ActiveRun(run_id=generate_run_id(), job_id=resolved.job_id, token=token)
    _active_runs[active.run_id] = active
    return active


def _release(active: _ActiveRun) -> None:
    _active_runs.pop(active.run_id, None)
    if active.job_id is not None:
        _running_jobs.discard(active.job_id)


def active_run_ids() -> list[str]:
    return list(_active_runs)


def cancel_run(run_id: str, reason: str = "cancelled by user") -> bool:
    """Cancel an in-flight run. Returns False if *run_id* is not running."""
    active = _active_runs.get(run_id)
    if active is None:
        return False
    logger.info("Cancelling run %s (%s)", run_id, reason)
    active.token.cancel(reason)
    return True


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def _execute(
    resolved: ResolvedRun,
    active: _ActiveRun,
    on_event: EventSink,
) -> JobResult | None:
    """Run one resolved job to completion and record its outcome.

    Emits every engine event tagged with the run id, then ``done``.
    Returns the persisted result, or None if the engine failed outright
    (an ``error`` event is sent instead of ``done``).
    """
    run_id, job_id = active.run_id, resolved.job_id
    emit = safe_sink(on_event)

    def tagged(event: JobStreamEvent) -> None:
        emit(event.model_copy(update={"run_id": run_id, "job_id": job_id}))

    started_at = utc_now()
    logger.info(
        "Run %s started: %s on %d project(s)", run_id, resolved.job_name, len(resolved.project_paths),
    )
    try:
        if job_id is not None:
            await job_repo.update_job_run_status(job_id, JobStatus.RUNNING)
        try:
            results = await run_job_on_projects(
                resolved.prompt,
                resolved.project_paths,
                resolved.pre_check,
                resolved.max_parallel,
                tagged,
                backend=resolved.backend,
                options=execution_options(),
                cancel=active.token,
            )
        except Exception as exc:
            logger.exception("Run %s failed", run_id)
            tagged(ErrorEvent(error=str(exc) or type(exc).__name__))
            if job_id is not None:
                await job_repo.update_job_run_status(job_id, JobStatus.ERROR)
            return None

        status = run_status(results)
        summary = summarize(results)
        result = await result_repo.save_result(JobResult(
            id=run_id,
            job_id=job_id or ADHOC_JOB_ID,
            job_name=resolved.job_name,
            started_at=started_at,
            completed_at=utc_now(),
            projects=results,
            status=status,
            summary=summary,
        ))
        tagged(DoneEvent(status=status, summary=summary))

        if job_id is not None:
            await job_repo.update_job_run_status(
                job_id,
                _JOB_STATUS_AFTER_RUN[status],
                last_result_url=f"/api/jobs/results/{run_id}",
            )
            if all_skipped(results):
                await job_repo.mark_job_skipped(job_id)
        logger.info("Run %s finished: %s (%s)", run_id, status, summary)
        return result
    finally:
        _release(active)


# ---------------------------------------------------------------------------
# SSE relay
# ---------------------------------------------------------------------------

_END = object()


def sse_frame(event: JobStreamEvent) -> str:
    return f"data: {event_to_json(event)}\n\n"


class RunStream:
    """The SSE frames of one run, as an async iterator.

    The work task starts as soon as the stream is created, so the run
    (and the release of its job claim) never depends on the response
    body being pulled.  Closing the stream, or cancelling the reader,
    before the work finishes cancels the run through *token*; the task
    still finishes in the background so results and job status are
    recorded.
    """

    def __init__(
        self,
        work: Callable[[EventSink], Awaitable[object]],
        token: CancellationToken,
        label: str,
    ) -> None:
        self._token = token
        self._label = label
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.task = asyncio.create_task(work(self._queue.put_nowait))
        self.task.add_done_callback(lambda _t: self._queue.put_nowait(_END))
        _background.add(self.task)
        self.task.add_done_callback(_background.discard)

    def __aiter__(self) -> "RunStream":
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        try:
            item = await self._queue.get()
        except asyncio.CancelledError:
            await self.aclose()
            raise
        if item is not _END:
            return sse_frame(item)

        self._closed = True
        exc = None if self.task.cancelled() else self.task.exception()
        if exc is None:
            raise StopAsyncIteration
        logger.error("Relay for %s ended with an error", self._label, exc_info=exc)
        return sse_frame(ErrorEvent(error=str(exc) or type(exc).__name__))

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self.task.done():
            logger.info("Client disconnected from %s; cancelling", self._label)
            self._token.cancel("client disconnected")


def stream_run(
    resolved: ResolvedRun,
    cancel: CancellationToken | None = None,
) -> RunStream:
    """Claim the job and start one run, returning its SSE stream.

    Raises ``ConflictError`` immediately (before any streaming starts)
    if the saved job already has a run in flight.
    """
    token = cancel or CancellationToken()
    active = _claim(resolved, token)

    async def work(sink: EventSink) -> JobResult | None:
        return await _execute(resolved, active, sink)

    return RunStream(work, token, f"run {active.run_id}")


# ---------------------------------------------------------------------------
# Sequential runner (startup jobs)
# ---------------------------------------------------------------------------


async def run_jobs_sequentially(
    job_ids: list[str],
    on_event: EventSink | None = None,
    cancel: CancellationToken | None = None,
) -> list[JobResult]:
    """Run saved jobs one after another; each job's projects run in parallel.

    A job that is missing or already running is reported with an
    ``error`` event and skipped.  Cancelling *cancel* stops the current
    job and every job after it.
    """
    token = cancel or CancellationToken()
    emit = safe_sink(on_event)
    results: list[JobResult] = []

    for job_id in job_ids:
        if token.is_cancelled:
            logger.info("Sequential run cancelled; %d job(s) not started", len(job_ids) - len(results))
            break
        try:
            resolved = await resolve_run(job_id=job_id)
            active = _claim(resolved, token)
        except (NotFoundError, ConflictError) as exc:
            logger.warning("Skipping job %s: %s", job_id, exc)
            emit(ErrorEvent(job_id=job_id, error=str(exc)))
            continue
        result = await _execute(resolved, active, emit)
        if result is not None:
            results.append(result)
    return results


def stream_trigger(
    trigger: JobTrigger,
    cancel: CancellationToken | None = None,
) -> RunStream:
    """SSE stream running every saved job with *trigger*, one job at a time."""
    token = cancel or CancellationToken()

    async def work(sink: EventSink) -> list[JobResult]:
        jobs = await job_repo.list_jobs(trigger=trigger)
        logger.info("Trigger %s: %d job(s)", trigger.value, len(jobs))
        return await run_jobs_sequentially([j.id for j in jobs], sink, token)

    return RunStream(work, token, f"trigger {trigger.value}")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def shutdown(timeout_s: float = 10.0) -> None:
    """Cancel every in-flight run and wait briefly for them to wind down."""
    for active in list(_active_runs.values()):
        active.token.cancel("server shutdown")
    if _background:
        _, pending = await asyncio.wait(set(_background), timeout=timeout_s)
        if pending:
            logger.warning("%d run(s) still winding down at shutdown", len(pending))
