"""Shared test fixtures — reduces boilerplate across test modules.

Provides:
- ``isolated_storage`` — autouse fixture pointing the job store at ``tmp_path``
- ``make_cli`` — writes a fake assistant executable (a tiny Python script)
- ``make_projects`` — creates project directories under ``tmp_path``
- ``cli_options`` — ``ExecutionOptions`` pointing the Claude backend at a fake CLI
- ``stream_cli`` — fake CLI that prints a scripted stream-json transcript
- ``test_client`` — pre-built TestClient against the app
"""

import json
import os
import sys
import textwrap
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from app.services import job_service
from job_engine import ExecutionOptions


# ---------------------------------------------------------------------------
# Marker registration
# ---------------------------------------------------------------------------


def pytest_configure(config):
    """Register custom markers.

    ``subprocess`` tests spawn real child processes (fake CLIs written
    to ``tmp_path``); they need a POSIX shell and are skipped on Windows.
    """
    config.addinivalue_line(
        "markers",
        "subprocess: tests that spawn real child processes (POSIX only)",
    )


def pytest_collection_modifyitems(items):
    if sys.platform != "win32":
        return
    skip = pytest.mark.skip(reason="fake CLIs rely on POSIX shebangs and process groups")
    for item in items:
        if "subprocess" in item.keywords:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Environment patching
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch) -> Path:
    """Point jobs.json / results.json at a per-test directory.

    Also clears the service's in-flight run registry so a failed test
    cannot leak a "running" job into the next one.
    """
    storage = tmp_path / "jobs-data"
    monkeypatch.setattr(settings, "JOBS_STORAGE_DIR", str(storage))
    monkeypatch.setattr(settings, "MAX_STORED_RESULTS", 50)
    monkeypatch.setattr(settings, "DEFAULT_MAX_PARALLEL", 3)
    monkeypatch.setattr(settings, "EXECUTION_TIMEOUT_S", 30.0)
    monkeypatch.setattr(settings, "KILL_GRACE_S", 1.0)
    job_service._active_runs.clear()
    job_service._running_jobs.clear()
    return storage


# ---------------------------------------------------------------------------
# Fake CLIs and projects
# ---------------------------------------------------------------------------


@pytest.fixture
def bin_dir(tmp_path) -> Path:
    path = tmp_path / "bin"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def make_cli(bin_dir):
    """Factory: ``make_cli(body, name="claude") -> str`` (absolute path).

    *body* is Python source run with the test interpreter; the prompt is
    ``sys.argv[-1]``.
    """

    def _make(body: str, name: str = "claude") -> str:
        path = bin_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
        path.chmod(0o755)
        return str(path)

    return _make


@pytest.fixture
def make_projects(tmp_path):
    """Factory: ``make_projects("a", "b") -> [str, str]`` of existing dirs."""

    def _make(*names: str) -> list[str]:
        paths = []
        for name in names:
            path = tmp_path / "projects" / name
            path.mkdir(parents=True, exist_ok=True)
            paths.append(str(path))
        return paths

    return _make


@pytest.fixture
def path_env(bin_dir) -> dict[str, str]:
    """Environment with the fake-CLI directory first on PATH."""
    return {**os.environ, "PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}"}


@pytest.fixture
def cli_options(bin_dir, path_env):
    """Factory: options running *claude_bin* with short timeouts."""

    def _make(claude_bin: str | None = None, **overrides) -> ExecutionOptions:
        params = dict(
            claude_bin=claude_bin or str(bin_dir / "claude"),
            env=path_env,
            timeout_s=20.0,
            kill_grace_s=1.0,
            precheck_timeout_s=10.0,
        )
        params.update(overrides)
        return ExecutionOptions(**params)

    return _make


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def stream_cli(make_cli):
    """Factory: fake CLI printing *events* (dicts become JSON lines, strings
    are printed verbatim) then exiting with *exit_code*.

    *before* / *after* are extra top-level Python statements run around
    the printing loop.
    """

    def _make(
        *events,
        exit_code: int = 0,
        name: str = "claude",
        before: str = "",
        after: str = "",
    ) -> str:
        lines = [json.dumps(e) if isinstance(e, dict) else e for e in events]
        body = (
            "import sys, time\n"
            + before
            + f"for line in {lines!r}:\n    print(line, flush=True)\n"
            + after
            + f"sys.exit({exit_code})\n"
        )
        return make_cli(body, name=name)

    return _make


@pytest.fixture
def test_client() -> TestClient:
    """A fresh ``TestClient`` instance wrapping the FastAPI app."""
    return TestClient(app)
