"""Application configuration loaded from environment variables.

Uses ``pydantic-settings`` for automatic env-var loading, type coercion,
and ``.env`` file support.  Every setting has a working local default,
so the dashboard starts with no ``.env`` at all.
"""

VERSION = "0.1.0"

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from job_engine.contracts import PreCheckFailurePolicy
from job_engine.invoker import ExecutionOptions


class Settings(BaseSettings):
    """Application settings — sourced from environment / ``.env`` file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- storage --
    # jobs.json and results.json live here; created on first write.
    JOBS_STORAGE_DIR: str = ".jobs-data"
    MAX_STORED_RESULTS: int = Field(default=50, ge=1)

    # -- server --
    FRONTEND_URL: str = "http://localhost:3000"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    # Optional persistent log file (rotated at 10 MB, 3 backups).
    LOG_FILE: str = ""

    # -------------------------------------------------------------------------
    # Engine defaults
    #
    # A job's own maxParallel beats DEFAULT_MAX_PARALLEL.  EXECUTION_TIMEOUT_S
    # bounds one assistant process; 0 disables the limit.
    # PRECHECK_FAILURE_POLICY applies when a pre-check omits onError:
    #   "legacy"   : skip iff skipIf == "empty" (historical behaviour)
    #   "non-empty": treat the failure message as non-empty output
    #   "run"      : a failed pre-check never skips
    # -------------------------------------------------------------------------
    DEFAULT_MAX_PARALLEL: int = Field(default=3, ge=1)
    PRECHECK_TIMEOUT_S: float = Field(default=30.0, gt=0)
    EXECUTION_TIMEOUT_S: float = Field(default=1800.0, ge=0)
    KILL_GRACE_S: float = Field(default=5.0, ge=0)
    PRECHECK_FAILURE_POLICY: PreCheckFailurePolicy = PreCheckFailurePolicy.LEGACY

    # Path to the Claude CLI; blank → well-known install locations, then PATH.
    CLAUDE_BIN: str = ""

    @property
    def storage_dir(self) -> Path:
        return Path(self.JOBS_STORAGE_DIR).expanduser()


settings = Settings()


def execution_options() -> ExecutionOptions:
    """Build engine ``ExecutionOptions`` from the current settings."""
    return ExecutionOptions(
        timeout_s=settings.EXECUTION_TIMEOUT_S or None,
        precheck_timeout_s=settings.PRECHECK_TIMEOUT_S,
        claude_bin=settings.CLAUDE_BIN or None,
        kill_grace_s=settings.KILL_GRACE_S,
    )
