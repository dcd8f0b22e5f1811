"""Tests for settings loading and engine option mapping."""

from app.config import Settings, execution_options, settings
from job_engine import PreCheckFailurePolicy


def test_defaults_need_no_env(monkeypatch):
    """Every setting has a local default."""
    for name in ("JOBS_STORAGE_DIR", "DEFAULT_MAX_PARALLEL", "EXECUTION_TIMEOUT_S"):
        monkeypatch.delenv(name, raising=False)
    cfg = Settings(_env_file=None)
    assert cfg.JOBS_STORAGE_DIR == ".jobs-data"
    assert cfg.MAX_STORED_RESULTS == 50
    assert cfg.DEFAULT_MAX_PARALLEL == 3
    assert cfg.PRECHECK_TIMEOUT_S == 30.0
    assert cfg.EXECUTION_TIMEOUT_S == 1800.0
    assert cfg.PRECHECK_FAILURE_POLICY is PreCheckFailurePolicy.LEGACY


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DEFAULT_MAX_PARALLEL", "5")
    monkeypatch.setenv("PRECHECK_FAILURE_POLICY", "run")
    monkeypatch.setenv("JOBS_STORAGE_DIR", "~/jobs")
    cfg = Settings(_env_file=None)
    assert cfg.DEFAULT_MAX_PARALLEL == 5
    assert cfg.PRECHECK_FAILURE_POLICY is PreCheckFailurePolicy.RUN
    assert "~" not in str(cfg.storage_dir)


def test_invalid_parallel_rejected(monkeypatch):
    import pytest
    from pydantic import ValidationError

    monkeypatch.setenv("DEFAULT_MAX_PARALLEL", "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_execution_options(monkeypatch):
    monkeypatch.setattr(settings, "EXECUTION_TIMEOUT_S", 0.0)
    monkeypatch.setattr(settings, "CLAUDE_BIN", "")
    monkeypatch.setattr(settings, "PRECHECK_TIMEOUT_S", 12.0)
    options = execution_options()
    assert options.timeout_s is None
    assert options.claude_bin is None
    assert options.precheck_timeout_s == 12.0

    monkeypatch.setattr(settings, "EXECUTION_TIMEOUT_S", 60.0)
    monkeypatch.setattr(settings, "CLAUDE_BIN", "/opt/claude")
    options = execution_options()
    assert options.timeout_s == 60.0
    assert options.claude_bin == "/opt/claude"
