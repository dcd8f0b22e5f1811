"""Job repository -- reads and writes for saved job definitions (jobs.json)."""

import logging
import random
import string
import time
from datetime import datetime

from pydantic import ValidationError

from app.repos import store
from job_engine.contracts import (
    Job,
    JobBackend,
    JobStatus,
    JobTrigger,
    PreCheck,
    utc_now,
)

logger = logging.getLogger(__name__)

JOBS_FILE = "jobs.json"
_KEY = "jobs"

# Fields a plain update may never change.
_IMMUTABLE = frozenset({"id", "created_at"})
# Run bookkeeping carried over when a job definition is re-saved.
_PRESERVED_ON_SAVE = ("created_at", "last_run", "last_skipped", "last_result_url")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_job_id() -> str:
    """``job_<epoch ms>_<7 base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"job_{int(time.time() * 1000)}_{suffix}"


def _to_doc(job: Job) -> dict:
    return job.model_dump(mode="json", by_alias=True, exclude_none=True)


def _from_doc(item: dict) -> Job | None:
    try:
        return Job.model_validate(item)
    except ValidationError as exc:
        logger.warning("Ignoring invalid stored job %r: %s", item.get("id"), exc)
        return None


def _index_of(items: list[dict], job_id: str) -> int:
    for i, item in enumerate(items):
        if item.get("id") == job_id:
            return i
    return -1


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def list_jobs(
    trigger: JobTrigger | None = None,
    status: JobStatus | None = None,
) -> list[Job]:
    """All saved jobs in insertion order, optionally filtered."""
    jobs = [j for j in map(_from_doc, await store.load(JOBS_FILE, _KEY)) if j is not None]
    if trigger is not None:
        jobs = [j for j in jobs if j.trigger is trigger]
    if status is not None:
        jobs = [j for j in jobs if j.status is status]
    return jobs


async def get_job(job_id: str) -> Job | None:
    """Fetch a job by id. Returns None if not found."""
    for item in await store.load(JOBS_FILE, _KEY):
        if item.get("id") == job_id:
            return _from_doc(item)
    return None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def save_job(
    *,
    name: str,
    prompt: str,
    project_paths: list[str],
    trigger: JobTrigger = JobTrigger.MANUAL,
    backend: JobBackend = JobBackend.CLAUDE,
    pre_check: PreCheck | None = None,
    max_parallel: int | None = None,
    job_id: str | None = None,
) -> tuple[Job, bool]:
    """Create a job, or replace the definition of an existing one.

    Returns ``(job, created)``.  Re-saving an existing id keeps its
    creation date and last-run bookkeeping and resets status to idle.
    """
    now = utc_now()
    job = Job(
        id=job_id or generate_job_id(),
        name=name,
        prompt=prompt,
        project_paths=list(project_paths),
        trigger=trigger,
        backend=backend,
        pre_check=pre_check,
        max_parallel=max_parallel,
        status=JobStatus.IDLE,
        created_at=now,
        updated_at=now,
    )

    def _mutate(items: list[dict]) -> tuple[Job, bool]:
        idx = _index_of(items, job.id)
        if idx < 0:
            items.append(_to_doc(job))
            return job, True
        existing = _from_doc(items[idx])
        saved = job
        if existing is not None:
            saved = job.model_copy(
                update={f: getattr(existing, f) for f in _PRESERVED_ON_SAVE}
            )
        items[idx] = _to_doc(saved)
        return saved, False

    saved, created = await store.update(JOBS_FILE, _KEY, _mutate)
    logger.info("%s job %s (%s)", "Created" if created else "Updated", saved.id, saved.name)
    return saved, created


async def update_job(job_id: str, **changes) -> Job | None:
    """Apply *changes* (snake_case field names) to a job.

    ``id`` and ``created_at`` are ignored; ``updated_at`` is bumped.
    Returns the updated job, or None if the id is unknown.
    """
    changes = {k: v for k, v in changes.items() if k not in _IMMUTABLE}

    def _mutate(items: list[dict]) -> Job | None:
        idx = _index_of(items, job_id)
        if idx < 0:
            return None
        current = _from_doc(items[idx])
        if current is None:
            return None
        updated = Job.model_validate(
            {**current.model_dump(), **changes, "updated_at": utc_now()}
        )
        items[idx] = _to_doc(updated)
        return updated

    return await store.update(JOBS_FILE, _KEY, _mutate)


async def delete_job(job_id: str) -> bool:
    """Delete a job. Returns True if it existed."""

    def _mutate(items: list[dict]) -> bool:
        idx = _index_of(items, job_id)
        if idx < 0:
            return False
        del items[idx]
        return True

    deleted = await store.update(JOBS_FILE, _KEY, _mutate)
    if deleted:
        logger.info("Deleted job %s", job_id)
    return deleted


async def update_job_run_status(
    job_id: str,
    status: JobStatus,
    last_result_url: str | None = None,
) -> Job | None:
    """Record the outcome of a run: status, ``last_run`` and result link."""
    return await update_job(
        job_id,
        status=status,
        last_run=utc_now(),
        last_result_url=last_result_url,
    )


async def mark_job_skipped(job_id: str, when: datetime | None = None) -> Job | None:
    """Stamp ``last_skipped`` after a run in which every project was skipped."""
    return await update_job(job_id, last_skipped=when or utc_now())
