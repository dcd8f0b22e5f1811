"""Tests for the /api/jobs router -- CRUD, SSE runs and run history."""

import asyncio
import json

import pytest

from app.config import settings
from app.repos import job_repo, result_repo
from app.repos.result_repo import JobResult
from app.services import job_service
from job_engine import PreCheckFailurePolicy, ProjectRunResult
from job_engine.contracts import utc_now


def _delta(text: str) -> dict:
    return {"type": "content_block_delta", "delta": {"text": text}}


def _events(response) -> list[dict]:
    return [
        json.loads(chunk[len("data: "):])
        for chunk in response.text.split("\n\n")
        if chunk.startswith("data: ")
    ]


def _job_body(**overrides) -> dict:
    body = {
        "name": "Update deps",
        "prompt": "Update outdated dependencies",
        "projectPaths": ["/code/a", "/code/b"],
        "trigger": "manual",
    }
    body.update(overrides)
    return body


def _seed_results(*run_ids: str) -> None:
    now = utc_now()

    async def _save():
        for run_id in run_ids:
            await result_repo.save_result(JobResult(
                id=run_id, job_id="adhoc", job_name="Ad-hoc Job", started_at=now,
                completed_at=now, status="complete",
                projects=[ProjectRunResult(path="/a", name="a", output="ok", started_at=now)],
            ))

    asyncio.run(_save())


@pytest.fixture
def fake_claude(stream_cli, monkeypatch):
    def _install(*events, **kwargs) -> str:
        path = stream_cli(*events, **kwargs)
        monkeypatch.setattr(settings, "CLAUDE_BIN", path)
        return path

    return _install


# ═══════════════════════════════════════════════════════════════════
# Job CRUD
# ═══════════════════════════════════════════════════════════════════


class TestJobCrud:
    def test_create_returns_201(self, test_client):
        resp = test_client.post("/api/jobs", json=_job_body(maxParallel=2))
        assert resp.status_code == 201
        job = resp.json()
        assert job["id"].startswith("job_")
        assert job["projectPaths"] == ["/code/a", "/code/b"]
        assert job["backend"] == "claude"
        assert job["status"] == "idle"
        assert job["maxParallel"] == 2

    def test_update_returns_200(self, test_client):
        job = test_client.post("/api/jobs", json=_job_body()).json()
        resp = test_client.post("/api/jobs", json=_job_body(id=job["id"], name="Renamed"))
        assert resp.status_code == 200
        assert resp.json()["name"] == "Renamed"
        assert resp.json()["createdAt"] == job["createdAt"]

    def test_list_and_get(self, test_client):
        a = test_client.post("/api/jobs", json=_job_body()).json()
        b = test_client.post("/api/jobs", json=_job_body(trigger="on-login")).json()

        listed = test_client.get("/api/jobs").json()["jobs"]
        assert [j["id"] for j in listed] == [a["id"], b["id"]]

        on_login = test_client.get("/api/jobs", params={"trigger": "on-login"}).json()["jobs"]
        assert [j["id"] for j in on_login] == [b["id"]]

        single = test_client.get("/api/jobs", params={"id": a["id"]})
        assert single.status_code == 200
        assert single.json()["id"] == a["id"]

    def test_get_unknown(self, test_client):
        resp = test_client.get("/api/jobs", params={"id": "job_missing"})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Job not found"

    def test_delete(self, test_client):
        job = test_client.post("/api/jobs", json=_job_body()).json()
        assert test_client.delete("/api/jobs", params={"id": job["id"]}).json() == {"success": True}
        assert test_client.delete("/api/jobs", params={"id": job["id"]}).status_code == 404

    def test_delete_requires_id(self, test_client):
        assert test_client.delete("/api/jobs").status_code == 400

    def test_pre_check_round_trip(self, test_client):
        pre_check = {"command": "npm outdated", "skipIf": "matches", "pattern": "^$", "onError": "run"}
        job = test_client.post("/api/jobs", json=_job_body(preCheck=pre_check)).json()
        assert job["preCheck"] == pre_check

    def test_failure_policy_resolved_at_run_time(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "PRECHECK_FAILURE_POLICY", PreCheckFailurePolicy.NON_EMPTY)
        job = test_client.post(
            "/api/jobs", json=_job_body(preCheck={"command": "x", "skipIf": "empty"}),
        ).json()
        assert "onError" not in job["preCheck"]
        stored = json.loads((settings.storage_dir / job_repo.JOBS_FILE).read_text())
        assert "onError" not in stored["jobs"][0]["preCheck"]

        # A later change of the server default reaches jobs saved earlier.
        monkeypatch.setattr(settings, "PRECHECK_FAILURE_POLICY", PreCheckFailurePolicy.RUN)
        resolved = asyncio.run(job_service.resolve_run(job_id=job["id"]))
        assert resolved.pre_check.on_error is PreCheckFailurePolicy.RUN


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": ""},
            {"projectPaths": []},
            {"trigger": "hourly"},
            {"backend": "copilot"},
            {"maxParallel": 0},
            {"preCheck": {"command": "x", "skipIf": "matches"}},
        ],
    )
    def test_invalid_job_is_400(self, test_client, overrides):
        resp = test_client.post("/api/jobs", json=_job_body(**overrides))
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Validation failed"
        assert isinstance(body["detail"], list)
        assert body["request_id"]

    def test_missing_fields(self, test_client):
        assert test_client.post("/api/jobs", json={"name": "x"}).status_code == 400


# ═══════════════════════════════════════════════════════════════════
# Runs
# ═══════════════════════════════════════════════════════════════════


class TestRunErrors:
    def test_unknown_job(self, test_client):
        resp = test_client.post("/api/jobs/run", json={"jobId": "job_missing"})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Job not found"

    def test_unknown_job_as_event_stream(self, test_client):
        resp = test_client.post(
            "/api/jobs/run", json={"jobId": "job_missing"}, headers={"Accept": "text/event-stream"},
        )
        assert resp.status_code == 404
        assert _events(resp) == [{"type": "error", "error": "Job not found"}]

    def test_adhoc_requires_prompt_and_paths(self, test_client):
        resp = test_client.post("/api/jobs/run", json={"prompt": "x"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "prompt and projectPaths required for ad-hoc jobs"

    def test_cancel_unknown_run(self, test_client):
        assert test_client.post("/api/jobs/runs/run_missing/cancel").status_code == 404

    def test_no_active_runs(self, test_client):
        assert test_client.get("/api/jobs/runs").json() == {"runs": []}


@pytest.mark.subprocess
class TestRunStreams:
    def test_adhoc_run(self, test_client, fake_claude, make_projects):
        fake_claude(_delta("Done"))
        paths = make_projects("a", "b")

        resp = test_client.post("/api/jobs/run", json={"prompt": "go", "projectPaths": paths})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        events = _events(resp)
        assert events[-1]["type"] == "done"
        assert events[-1]["status"] == "complete"
        completes = [e for e in events if e["type"] == "complete"]
        assert sorted(e["projectName"] for e in completes) == ["a", "b"]
        assert all(e["output"] == "Done" and e["needsHuman"] is False for e in completes)

    def test_saved_job_run_then_results(self, test_client, fake_claude, make_projects):
        fake_claude(_delta("Please review the upgrade"))
        job = test_client.post("/api/jobs", json=_job_body(projectPaths=make_projects("a"))).json()

        events = _events(test_client.post("/api/jobs/run", json={"jobId": job["id"]}))
        run_id = events[-1]["runId"]
        assert events[-1]["status"] == "needs-human"

        refreshed = test_client.get("/api/jobs", params={"id": job["id"]}).json()
        assert refreshed["status"] == "needs-human"
        assert refreshed["lastResultUrl"] == f"/api/jobs/results/{run_id}"

        results = test_client.get("/api/jobs/results").json()["results"]
        assert [r["id"] for r in results] == [run_id]
        assert results[0]["jobName"] == "Update deps"
        assert results[0]["projects"][0]["needsHuman"] is True

        assert test_client.get(refreshed["lastResultUrl"]).json()["id"] == run_id

    def test_pre_check_skip_event(self, test_client, fake_claude, make_projects):
        fake_claude(_delta("never"))
        resp = test_client.post("/api/jobs/run", json={
            "prompt": "go",
            "projectPaths": make_projects("a"),
            "preCheck": {"command": "printf ''", "skipIf": "empty"},
        })
        events = _events(resp)
        assert events[0]["type"] == "pre-check"
        assert events[0]["skipped"] is True
        assert events[0]["preCheckOutput"] == ""
        assert [e["type"] for e in events] == ["pre-check", "done"]

    def test_run_trigger(self, test_client, fake_claude, make_projects):
        fake_claude(_delta("ok"))
        login = test_client.post(
            "/api/jobs", json=_job_body(projectPaths=make_projects("a"), trigger="on-login"),
        ).json()
        test_client.post("/api/jobs", json=_job_body(projectPaths=make_projects("b")))

        events = _events(test_client.post("/api/jobs/run-trigger", json={"trigger": "on-login"}))

        assert [e["jobId"] for e in events if e["type"] == "done"] == [login["id"]]

    def test_run_trigger_without_jobs(self, test_client):
        resp = test_client.post("/api/jobs/run-trigger", json={"trigger": "on-device-change"})
        assert resp.status_code == 200
        assert _events(resp) == []


# ═══════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════


class TestResults:
    def test_read_flow(self, test_client):
        _seed_results("run_1", "run_2")

        assert test_client.post("/api/jobs/results/run_1/read").json()["isRead"] is True
        unread = test_client.get("/api/jobs/results", params={"unread": "true"}).json()["results"]
        assert [r["id"] for r in unread] == ["run_2"]
        assert test_client.post("/api/jobs/results/run_missing/read").status_code == 404

    def test_get_and_delete(self, test_client):
        _seed_results("run_1", "run_2")

        assert test_client.get("/api/jobs/results/run_1").status_code == 200
        assert test_client.delete("/api/jobs/results/run_1").json() == {"success": True}
        assert test_client.get("/api/jobs/results/run_1").status_code == 404
        assert test_client.delete("/api/jobs/results/run_1").status_code == 404
        assert test_client.delete("/api/jobs/results").json() == {"success": True, "removed": 1}
        assert test_client.get("/api/jobs/results").json() == {"results": []}
