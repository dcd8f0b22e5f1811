"""Result repository -- persisted run history (results.json).

Results are kept newest first and capped at ``MAX_STORED_RESULTS``;
saving a result whose id already exists replaces the old entry.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from app.config import settings
from app.repos import store
from job_engine.contracts import ProjectRunResult

RESULTS_FILE = "results.json"
_KEY = "results"

ADHOC_JOB_ID = "adhoc"


class JobResult(BaseModel):
    """Outcome of one run of a job across all of its projects."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str  # the run id
    job_id: str
    job_name: str
    started_at: datetime
    completed_at: datetime
    projects: list[ProjectRunResult]
    status: Literal["complete", "error", "needs-human"]
    is_read: bool = False
    summary: str | None = None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _parse(items: list[dict]) -> list[JobResult]:
    parsed = []
    for item in items:
        try:
            parsed.append(JobResult.model_validate(item))
        except ValidationError:
            continue
    return parsed


async def save_result(result: JobResult) -> JobResult:
    """Insert *result* at the head of the history."""

    def _mutate(items: list[dict]) -> None:
        kept = [i for i in items if i.get("id") != result.id]
        items[:] = [result.to_dict(), *kept][: settings.MAX_STORED_RESULTS]

    await store.update(RESULTS_FILE, _KEY, _mutate)
    return result


async def list_results(unread_only: bool = False) -> list[JobResult]:
    """Stored results, newest first."""
    results = _parse(await store.load(RESULTS_FILE, _KEY))
    if unread_only:
        results = [r for r in results if not r.is_read]
    return results


async def get_result(result_id: str) -> JobResult | None:
    for result in await list_results():
        if result.id == result_id:
            return result
    return None


async def mark_read(result_id: str) -> JobResult | None:
    """Flag a result as viewed. Returns None if not found."""

    def _mutate(items: list[dict]) -> JobResult | None:
        for item in items:
            if item.get("id") == result_id:
                item["isRead"] = True
                return JobResult.model_validate(item)
        return None

    return await store.update(RESULTS_FILE, _KEY, _mutate)


async def delete_result(result_id: str) -> bool:
    def _mutate(items: list[dict]) -> bool:
        before = len(items)
        items[:] = [i for i in items if i.get("id") != result_id]
        return len(items) != before

    return await store.update(RESULTS_FILE, _KEY, _mutate)


async def clear_results() -> int:
    """Delete the whole history. Returns the number of results removed."""

    def _mutate(items: list[dict]) -> int:
        count = len(items)
        items.clear()
        return count

    return await store.update(RESULTS_FILE, _KEY, _mutate)
