"""Job engine contracts — Pydantic models for jobs, results and stream events.

Every component of the engine communicates through these models.
All models are frozen (immutable after creation).  Attributes are
snake_case in Python and camelCase on the wire (``projectName``,
``needsHuman`` ...) so the JSON the relay emits matches what the
dashboard UI already consumes.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

_WIRE = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


def utc_now() -> datetime:
    """Timezone-aware ``now`` used for every engine timestamp."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SkipIf(str, enum.Enum):
    """When a pre-check's output means the project can be skipped."""

    EMPTY = "empty"
    NON_EMPTY = "non-empty"
    MATCHES = "matches"


class PreCheckFailurePolicy(str, enum.Enum):
    """How the skip decision is made when the pre-check command itself fails.

    ``legacy`` reproduces the dashboard's historical behaviour
    (skip iff ``skipIf == "empty"``).  ``non-empty`` treats the failure
    message as ordinary non-empty output.  ``run`` never skips.
    """

    LEGACY = "legacy"
    NON_EMPTY = "non-empty"
    RUN = "run"


class JobTrigger(str, enum.Enum):
    MANUAL = "manual"
    ON_LOGIN = "on-login"
    ON_DEVICE_CHANGE = "on-device-change"
    BEFORE_FIRST_PROMPT = "before-first-prompt"


class JobBackend(str, enum.Enum):
    """Which assistant CLI runs the prompt."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"


class JobStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    NEEDS_HUMAN = "needs-human"
    ERROR = "error"


class RunOutcome(str, enum.Enum):
    """Terminal state of a single project within a run."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Pre-check
# ---------------------------------------------------------------------------


class PreCheck(BaseModel):
    """Cheap shell command run before the assistant to decide whether to skip."""

    model_config = _WIRE

    command: str = Field(..., description="Shell command run in the project directory")
    skip_if: SkipIf
    pattern: str | None = Field(default=None, description="Regex for skipIf=matches")
    on_error: PreCheckFailurePolicy | None = Field(
        default=None,
        description="Skip rule when the command itself fails; unset means the server default",
    )

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("preCheck.command must not be empty")
        return v

    @model_validator(mode="after")
    def _pattern_required_for_matches(self) -> "PreCheck":
        if self.skip_if is SkipIf.MATCHES:
            if not self.pattern:
                raise ValueError('preCheck.pattern is required when skipIf is "matches"')
            try:
                re.compile(self.pattern)
            except re.error as exc:
                raise ValueError(f"preCheck.pattern is not a valid regex: {exc}") from exc
        return self


class PreCheckOutcome(BaseModel):
    """Result of running a pre-check against one project."""

    model_config = ConfigDict(frozen=True)

    skip: bool
    output: str = ""
    failed: bool = False


# ---------------------------------------------------------------------------
# Job definition (owned by the persistence layer, read-only to the engine)
# ---------------------------------------------------------------------------


class Job(BaseModel):
    """A saved job definition."""

    model_config = _WIRE

    id: str
    name: str
    prompt: str
    project_paths: list[str]
    trigger: JobTrigger = JobTrigger.MANUAL
    backend: JobBackend = JobBackend.CLAUDE
    pre_check: PreCheck | None = None
    max_parallel: int | None = Field(default=None, ge=1)

    last_run: datetime | None = None
    last_skipped: datetime | None = None
    last_result_url: str | None = None
    status: JobStatus | None = None

    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Per-project result
# ---------------------------------------------------------------------------


class ProjectRunResult(BaseModel):
    """Terminal result of running a job against one project."""

    model_config = _WIRE

    path: str
    name: str
    pre_check_skipped: bool = False
    pre_check_output: str | None = None
    output: str | None = None
    error: str | None = None
    needs_human: bool = False
    outcome: RunOutcome = RunOutcome.COMPLETED
    started_at: datetime
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise with wire aliases for persistence / SSE."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


class _StreamEvent(BaseModel):
    model_config = _WIRE

    project: str | None = None
    project_name: str | None = None
    run_id: str | None = None
    job_id: str | None = None


class PreCheckEvent(_StreamEvent):
    """Pre-check finished for a project."""

    type: Literal["pre-check"] = "pre-check"
    skipped: bool
    pre_check_output: str = ""


class StartEvent(_StreamEvent):
    """The assistant process is starting for a project."""

    type: Literal["start"] = "start"


class ContentEvent(_StreamEvent):
    """A chunk of assistant text."""

    type: Literal["content"] = "content"
    text: str


class CompleteEvent(_StreamEvent):
    """The assistant process exited; carries the full output."""

    type: Literal["complete"] = "complete"
    output: str = ""
    needs_human: bool = False
    error: str | None = None
    outcome: RunOutcome = RunOutcome.COMPLETED


class ErrorEvent(_StreamEvent):
    """A project (or the whole run) failed without producing output."""

    type: Literal["error"] = "error"
    error: str


class DoneEvent(_StreamEvent):
    """Every project of a run reached a terminal state (relay only)."""

    type: Literal["done"] = "done"
    status: str | None = None
    summary: str | None = None


JobStreamEvent = Annotated[
    Union[PreCheckEvent, StartEvent, ContentEvent, CompleteEvent, ErrorEvent, DoneEvent],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[JobStreamEvent] = TypeAdapter(JobStreamEvent)


def event_to_dict(event: _StreamEvent) -> dict[str, Any]:
    """Wire representation of an event (camelCase, unset fields omitted)."""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


def event_to_json(event: _StreamEvent) -> str:
    return event.model_dump_json(by_alias=True, exclude_none=True)


def parse_event(data: dict[str, Any] | str) -> JobStreamEvent:
    """Rebuild a typed event from its wire form."""
    if isinstance(data, str):
        return _EVENT_ADAPTER.validate_json(data)
    return _EVENT_ADAPTER.validate_python(data)
