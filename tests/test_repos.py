"""Tests for app/repos -- the JSON store, jobs.json and results.json."""

import asyncio
import json
from datetime import timedelta

import pytest

from app.config import settings
from app.errors import CorruptStoreError
from app.repos import job_repo, result_repo, store
from app.repos.result_repo import JobResult
from job_engine.contracts import (
    JobBackend,
    JobStatus,
    JobTrigger,
    PreCheck,
    ProjectRunResult,
    utc_now,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _job_result(run_id: str, **overrides) -> JobResult:
    now = utc_now()
    defaults = {
        "id": run_id,
        "job_id": "job_1",
        "job_name": "Deps",
        "started_at": now,
        "completed_at": now,
        "projects": [ProjectRunResult(path="/p/a", name="a", output="ok", started_at=now)],
        "status": "complete",
        "summary": "1 completed",
    }
    defaults.update(overrides)
    return JobResult(**defaults)


# ---------------------------------------------------------------------------
# Tests: store
# ---------------------------------------------------------------------------


class TestStore:
    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self):
        assert await store.load("nothing.json", "items") == []

    @pytest.mark.asyncio
    async def test_update_persists_versioned_document(self, isolated_storage):
        returned = await store.update("things.json", "items", lambda items: items.append({"a": 1}) or "ok")
        assert returned == "ok"
        doc = json.loads((isolated_storage / "things.json").read_text())
        assert doc == {"items": [{"a": 1}], "version": store.STORE_VERSION}

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, isolated_storage):
        await store.update("things.json", "items", lambda items: items.append({}))
        assert [p.name for p in isolated_storage.iterdir()] == ["things.json"]

    @pytest.mark.asyncio
    async def test_corrupt_file_treated_as_empty(self, isolated_storage):
        isolated_storage.mkdir(parents=True)
        (isolated_storage / "things.json").write_text("{not json")
        assert await store.load("things.json", "items") == []

    @pytest.mark.asyncio
    async def test_corrupt_file_blocks_update(self, isolated_storage):
        isolated_storage.mkdir(parents=True)
        target = isolated_storage / "things.json"
        target.write_text("{not json")

        with pytest.raises(CorruptStoreError):
            await store.update("things.json", "items", lambda items: items.append({"a": 1}))

        assert target.read_text() == "{not json"

    @pytest.mark.asyncio
    async def test_wrong_shape_blocks_update(self, isolated_storage):
        isolated_storage.mkdir(parents=True)
        (isolated_storage / "things.json").write_text('{"items": {"a": 1}}')
        assert await store.load("things.json", "items") == []
        with pytest.raises(CorruptStoreError):
            await store.update("things.json", "items", lambda items: None)

    @pytest.mark.asyncio
    async def test_concurrent_updates_serialised(self):
        async def add(i):
            await store.update("things.json", "items", lambda items: items.append({"i": i}))

        await asyncio.gather(*(add(i) for i in range(20)))
        items = await store.load("things.json", "items")
        assert sorted(item["i"] for item in items) == list(range(20))


# ---------------------------------------------------------------------------
# Tests: jobs
# ---------------------------------------------------------------------------


class TestJobRepo:
    @pytest.mark.asyncio
    async def test_create_and_get(self, isolated_storage):
        job, created = await job_repo.save_job(
            name="Deps", prompt="update deps", project_paths=["/p/a", "/p/b"],
            pre_check=PreCheck(command="npm outdated", skip_if="empty"),
            max_parallel=2,
        )
        assert created is True
        assert job.id.startswith("job_")
        assert job.status is JobStatus.IDLE

        fetched = await job_repo.get_job(job.id)
        assert fetched == job

        doc = json.loads((isolated_storage / job_repo.JOBS_FILE).read_text())
        stored = doc["jobs"][0]
        assert stored["projectPaths"] == ["/p/a", "/p/b"]
        assert stored["preCheck"]["skipIf"] == "empty"
        assert stored["maxParallel"] == 2

    @pytest.mark.asyncio
    async def test_truncated_jobs_file_is_not_overwritten(self, isolated_storage):
        first, _ = await job_repo.save_job(name="A", prompt="p", project_paths=["/a"])
        jobs_file = isolated_storage / job_repo.JOBS_FILE
        damaged = jobs_file.read_text()[:-5]
        jobs_file.write_text(damaged)

        with pytest.raises(CorruptStoreError):
            await job_repo.save_job(name="B", prompt="p", project_paths=["/b"])

        assert jobs_file.read_text() == damaged
        assert first.id in damaged

    @pytest.mark.asyncio
    async def test_get_unknown(self):
        assert await job_repo.get_job("job_missing") is None

    @pytest.mark.asyncio
    async def test_resave_keeps_history(self):
        job, _ = await job_repo.save_job(name="A", prompt="p", project_paths=["/a"])
        await job_repo.update_job_run_status(job.id, JobStatus.ERROR, "/api/jobs/results/run_1")

        updated, created = await job_repo.save_job(
            job_id=job.id, name="A2", prompt="p2", project_paths=["/a", "/b"],
        )
        assert created is False
        assert updated.name == "A2"
        assert updated.created_at == job.created_at
        assert updated.last_run is not None
        assert updated.last_result_url == "/api/jobs/results/run_1"
        assert updated.status is JobStatus.IDLE
        assert len(await job_repo.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_list_filters(self):
        a, _ = await job_repo.save_job(name="A", prompt="p", project_paths=["/a"])
        b, _ = await job_repo.save_job(
            name="B", prompt="p", project_paths=["/b"], trigger=JobTrigger.ON_LOGIN,
            backend=JobBackend.GEMINI,
        )
        await job_repo.update_job_run_status(a.id, JobStatus.NEEDS_HUMAN)

        assert [j.id for j in await job_repo.list_jobs()] == [a.id, b.id]
        assert [j.id for j in await job_repo.list_jobs(trigger=JobTrigger.ON_LOGIN)] == [b.id]
        assert [j.id for j in await job_repo.list_jobs(status=JobStatus.NEEDS_HUMAN)] == [a.id]

    @pytest.mark.asyncio
    async def test_update_ignores_immutable_fields(self):
        job, _ = await job_repo.save_job(name="A", prompt="p", project_paths=["/a"])
        updated = await job_repo.update_job(job.id, id="other", name="renamed")
        assert updated.id == job.id
        assert updated.name == "renamed"
        assert updated.updated_at >= job.updated_at

    @pytest.mark.asyncio
    async def test_update_unknown(self):
        assert await job_repo.update_job("job_missing", name="x") is None

    @pytest.mark.asyncio
    async def test_mark_skipped(self):
        job, _ = await job_repo.save_job(name="A", prompt="p", project_paths=["/a"])
        when = utc_now() - timedelta(minutes=1)
        updated = await job_repo.mark_job_skipped(job.id, when)
        assert updated.last_skipped == when

    @pytest.mark.asyncio
    async def test_delete(self):
        job, _ = await job_repo.save_job(name="A", prompt="p", project_paths=["/a"])
        assert await job_repo.delete_job(job.id) is True
        assert await job_repo.delete_job(job.id) is False
        assert await job_repo.list_jobs() == []

    @pytest.mark.asyncio
    async def test_invalid_stored_entry_skipped(self):
        await store.update(job_repo.JOBS_FILE, "jobs", lambda items: items.append({"id": "broken"}))
        job, _ = await job_repo.save_job(name="A", prompt="p", project_paths=["/a"])
        assert [j.id for j in await job_repo.list_jobs()] == [job.id]


# ---------------------------------------------------------------------------
# Tests: results
# ---------------------------------------------------------------------------


class TestResultRepo:
    @pytest.mark.asyncio
    async def test_newest_first(self):
        await result_repo.save_result(_job_result("run_1"))
        await result_repo.save_result(_job_result("run_2"))
        assert [r.id for r in await result_repo.list_results()] == ["run_2", "run_1"]

    @pytest.mark.asyncio
    async def test_capped(self, monkeypatch):
        monkeypatch.setattr(settings, "MAX_STORED_RESULTS", 3)
        for i in range(5):
            await result_repo.save_result(_job_result(f"run_{i}"))
        assert [r.id for r in await result_repo.list_results()] == ["run_4", "run_3", "run_2"]

    @pytest.mark.asyncio
    async def test_same_id_replaced(self):
        await result_repo.save_result(_job_result("run_1", summary="old"))
        await result_repo.save_result(_job_result("run_1", summary="new"))
        results = await result_repo.list_results()
        assert len(results) == 1
        assert results[0].summary == "new"

    @pytest.mark.asyncio
    async def test_wire_format(self, isolated_storage):
        await result_repo.save_result(_job_result("run_1"))
        doc = json.loads((isolated_storage / result_repo.RESULTS_FILE).read_text())
        stored = doc["results"][0]
        assert stored["jobId"] == "job_1"
        assert stored["isRead"] is False
        assert stored["projects"][0]["name"] == "a"

    @pytest.mark.asyncio
    async def test_mark_read_and_unread_filter(self):
        await result_repo.save_result(_job_result("run_1"))
        await result_repo.save_result(_job_result("run_2"))
        marked = await result_repo.mark_read("run_1")
        assert marked.is_read is True
        assert [r.id for r in await result_repo.list_results(unread_only=True)] == ["run_2"]
        assert await result_repo.mark_read("run_missing") is None

    @pytest.mark.asyncio
    async def test_get_delete_clear(self):
        await result_repo.save_result(_job_result("run_1"))
        await result_repo.save_result(_job_result("run_2"))
        assert (await result_repo.get_result("run_1")).id == "run_1"
        assert await result_repo.delete_result("run_1") is True
        assert await result_repo.delete_result("run_1") is False
        assert await result_repo.get_result("run_1") is None
        assert await result_repo.clear_results() == 1
        assert await result_repo.list_results() == []
