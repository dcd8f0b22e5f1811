"""Bounded scheduler — runs one job prompt across many projects.

Each project is gated by the optional pre-check and then handed to the
invoker.  At most ``max_parallel`` projects hold a permit at a time; a
permit is taken before the pre-check and released once the project has
a terminal result.  Results come back in completion order, one per
input path, whatever happened to each project.
"""

from __future__ import annotations

import asyncio
import logging
import time

from job_engine.backends import get_backend
from job_engine.cancellation import CancellationToken
from job_engine.contracts import (
    ErrorEvent,
    JobBackend,
    PreCheck,
    PreCheckEvent,
    ProjectRunResult,
    RunOutcome,
    utc_now,
)
from job_engine.errors import RunCancelled
from job_engine.invoker import ExecutionOptions, run_on_project
from job_engine.limiter import ConcurrencyLimiter
from job_engine.precheck import run_pre_check
from job_engine.summary import EventSink, get_project_name, safe_sink, summarize

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL: int = 3


async def _run_one(
    project_path: str,
    prompt: str,
    pre_check: PreCheck | None,
    emit: EventSink,
    *,
    backend: str | JobBackend,
    options: ExecutionOptions,
    cancel: CancellationToken | None,
) -> ProjectRunResult:
    """Pre-check then invoke for a single project (permit already held)."""
    name = get_project_name(project_path)
    started_at = utc_now()

    if pre_check is not None:
        outcome = await run_pre_check(
            project_path,
            pre_check,
            timeout_s=options.precheck_timeout_s,
            env=options.env,
        )
        emit(PreCheckEvent(
            project=project_path,
            project_name=name,
            skipped=outcome.skip,
            pre_check_output=outcome.output,
        ))
        if outcome.skip:
            return ProjectRunResult(
                path=project_path,
                name=name,
                pre_check_skipped=True,
                pre_check_output=outcome.output,
                needs_human=False,
                outcome=RunOutcome.SKIPPED,
                started_at=started_at,
                completed_at=utc_now(),
            )

    result = await run_on_project(
        project_path,
        prompt,
        emit,
        backend=backend,
        options=options,
        cancel=cancel,
    )
    if pre_check is not None:
        result = result.model_copy(update={"pre_check_output": outcome.output})
    return result


def _cancelled_before_start(project_path: str, emit: EventSink) -> ProjectRunResult:
    name = get_project_name(project_path)
    message = RunCancelled(project_path, started=False).message
    emit(ErrorEvent(project=project_path, project_name=name, error=message))
    now = utc_now()
    return ProjectRunResult(
        path=project_path,
        name=name,
        error=message,
        outcome=RunOutcome.CANCELLED,
        started_at=now,
        completed_at=now,
    )


async def run_job_on_projects(
    prompt: str,
    project_paths: list[str],
    pre_check: PreCheck | None = None,
    max_parallel: int = DEFAULT_MAX_PARALLEL,
    on_event: EventSink | None = None,
    *,
    backend: str | JobBackend = JobBackend.CLAUDE,
    options: ExecutionOptions | None = None,
    cancel: CancellationToken | None = None,
) -> list[ProjectRunResult]:
    """Run *prompt* against every path in *project_paths*.

    Returns exactly one ``ProjectRunResult`` per input path, in the order
    projects finished.  Per-project failures never raise; an invalid
    ``max_parallel`` or unknown *backend* raises before any work starts.

    Parameters
    ----------
    prompt:
        Instruction passed to the assistant CLI.
    project_paths:
        Project directories; duplicates are run once per occurrence.
    pre_check:
        Optional gate run in each project before the assistant.
    max_parallel:
        Upper bound on projects in flight (>= 1).
    on_event:
        Synchronous sink for progress events.  Exceptions it raises are
        logged and ignored.
    cancel:
        Token that stops queued projects and terminates running ones.
    """
    limiter = ConcurrencyLimiter(max_parallel)
    get_backend(backend)
    if not project_paths:
        return []

    options = options or ExecutionOptions()
    emit = safe_sink(on_event)
    paths = list(project_paths)
    completions: asyncio.Queue[ProjectRunResult] = asyncio.Queue()
    t0 = time.monotonic()

    logger.info(
        "Running job on %d project(s) (max_parallel=%d, backend=%s, pre_check=%s)",
        len(paths), max_parallel, getattr(backend, "value", backend), bool(pre_check),
    )

    async def _worker(project_path: str) -> None:
        try:
            async with limiter:
                if cancel is not None and cancel.is_cancelled:
                    result = _cancelled_before_start(project_path, emit)
                else:
                    result = await _run_one(
                        project_path, prompt, pre_check, emit,
                        backend=backend, options=options, cancel=cancel,
                    )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Project %s failed unexpectedly", project_path)
            name = get_project_name(project_path)
            message = str(exc) or type(exc).__name__
            emit(ErrorEvent(project=project_path, project_name=name, error=message))
            result = ProjectRunResult(
                path=project_path,
                name=name,
                error=message,
                outcome=RunOutcome.ERROR,
                started_at=utc_now(),
                completed_at=utc_now(),
            )
        completions.put_nowait(result)

    tasks = [asyncio.create_task(_worker(p)) for p in paths]
    results: list[ProjectRunResult] = []
    try:
        while len(results) < len(paths):
            results.append(await completions.get())
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    await asyncio.gather(*tasks)
    logger.info(
        "Job finished in %.1fs: %s (peak concurrency %d)",
        time.monotonic() - t0, summarize(results), limiter.peak,
    )
    return results


__all__ = ["DEFAULT_MAX_PARALLEL", "run_job_on_projects"]
