"""Job execution engine — run one prompt across many project directories.

Public API
----------
Scheduler::

    run_job_on_projects, DEFAULT_MAX_PARALLEL

Invoker::

    run_on_project, ExecutionOptions

Pre-check::

    run_pre_check, decide_skip, decide_skip_on_failure

Classifier::

    needs_human, matched_patterns

Contracts (Pydantic models)::

    Job, PreCheck, PreCheckOutcome, ProjectRunResult,
    SkipIf, PreCheckFailurePolicy, JobTrigger, JobBackend,
    JobStatus, RunOutcome,
    JobStreamEvent, PreCheckEvent, StartEvent, ContentEvent,
    CompleteEvent, ErrorEvent, DoneEvent,
    event_to_dict, event_to_json, parse_event

Cancellation / concurrency::

    CancellationToken, ConcurrencyLimiter

Summary::

    EventSink, run_status, summarize, all_skipped,
    get_project_name, generate_run_id

Errors::

    EngineError, PreCheckFailure, ProcessSpawnFailure, ProtocolError,
    UpstreamError, AbnormalExit, ExecutionTimeout, RunCancelled,
    UnknownBackend
"""

from job_engine.cancellation import CancellationToken
from job_engine.classifier import matched_patterns, needs_human
from job_engine.contracts import (
    CompleteEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    Job,
    JobBackend,
    JobStatus,
    JobStreamEvent,
    JobTrigger,
    PreCheck,
    PreCheckEvent,
    PreCheckFailurePolicy,
    PreCheckOutcome,
    ProjectRunResult,
    RunOutcome,
    SkipIf,
    StartEvent,
    event_to_dict,
    event_to_json,
    parse_event,
)
from job_engine.errors import (
    AbnormalExit,
    EngineError,
    ExecutionTimeout,
    PreCheckFailure,
    ProcessSpawnFailure,
    ProtocolError,
    RunCancelled,
    UnknownBackend,
    UpstreamError,
)
from job_engine.invoker import ExecutionOptions, run_on_project
from job_engine.limiter import ConcurrencyLimiter
from job_engine.precheck import decide_skip, decide_skip_on_failure, run_pre_check
from job_engine.scheduler import DEFAULT_MAX_PARALLEL, run_job_on_projects
from job_engine.summary import (
    EventSink,
    all_skipped,
    generate_run_id,
    get_project_name,
    run_status,
    summarize,
)

__all__ = [
    # Scheduler
    "run_job_on_projects",
    "DEFAULT_MAX_PARALLEL",
    # Invoker
    "run_on_project",
    "ExecutionOptions",
    # Pre-check
    "run_pre_check",
    "decide_skip",
    "decide_skip_on_failure",
    # Classifier
    "needs_human",
    "matched_patterns",
    # Contracts
    "Job",
    "PreCheck",
    "PreCheckOutcome",
    "ProjectRunResult",
    "SkipIf",
    "PreCheckFailurePolicy",
    "JobTrigger",
    "JobBackend",
    "JobStatus",
    "RunOutcome",
    "JobStreamEvent",
    "PreCheckEvent",
    "StartEvent",
    "ContentEvent",
    "CompleteEvent",
    "ErrorEvent",
    "DoneEvent",
    "event_to_dict",
    "event_to_json",
    "parse_event",
    # Cancellation / concurrency
    "CancellationToken",
    "ConcurrencyLimiter",
    # Summary
    "EventSink",
    "run_status",
    "summarize",
    "all_skipped",
    "get_project_name",
    "generate_run_id",
    # Errors
    "EngineError",
    "PreCheckFailure",
    "ProcessSpawnFailure",
    "ProtocolError",
    "UpstreamError",
    "AbnormalExit",
    "ExecutionTimeout",
    "RunCancelled",
    "UnknownBackend",
]
