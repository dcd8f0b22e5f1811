"""External process invoker — runs one assistant CLI against one project.

``run_on_project()`` spawns the backend's CLI in the project directory,
parses its stdout as it arrives, forwards text to the caller as
``content`` events and returns a ``ProjectRunResult``.  It never raises
for a project-level failure:

* spawn failure          → ``error`` event, error-only result
* explicit upstream error → captured in ``result.error``
* non-zero exit           → ``"<CLI> exited with code N"``
* timeout / cancellation  → process group killed, partial output kept

Unparseable stdout lines are logged and dropped; they never end a run.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from job_engine.backends import BackendSpec, build_child_env, get_backend, resolve_claude_bin
from job_engine.cancellation import CancellationToken
from job_engine.classifier import matched_patterns
from job_engine.contracts import (
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    JobBackend,
    ProjectRunResult,
    RunOutcome,
    StartEvent,
    utc_now,
)
from job_engine.errors import (
    AbnormalExit,
    EngineError,
    ExecutionTimeout,
    ProcessSpawnFailure,
    ProtocolError,
    RunCancelled,
    UpstreamError,
)
from job_engine.framing import LineFramer
from job_engine.precheck import DEFAULT_PRECHECK_TIMEOUT_S
from job_engine.process import SESSION_KWARGS, terminate_process_group
from job_engine.protocol import MessageKind, parse_stream_line
from job_engine.summary import EventSink, get_project_name, safe_sink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_EXECUTION_TIMEOUT_S: float = 1800.0  # 30 minutes per project
DEFAULT_KILL_GRACE_S: float = 5.0
READ_CHUNK_BYTES: int = 64 * 1024


@dataclass(frozen=True)
class ExecutionOptions:
    """Process-level knobs shared by every project of a run."""

    # None disables the execution timeout.
    timeout_s: float | None = DEFAULT_EXECUTION_TIMEOUT_S
    precheck_timeout_s: float = DEFAULT_PRECHECK_TIMEOUT_S
    # Base environment for children; None → snapshot of os.environ.
    env: Mapping[str, str] | None = field(default=None, hash=False, compare=False)
    claude_bin: str | None = None
    kill_grace_s: float = DEFAULT_KILL_GRACE_S
    read_chunk_bytes: int = READ_CHUNK_BYTES


# ---------------------------------------------------------------------------
# Output accumulation
# ---------------------------------------------------------------------------


class _Transcript:
    """Accumulates assistant text and the last explicit error for one project."""

    __slots__ = ("parts", "error", "dropped_lines")

    def __init__(self) -> None:
        self.parts: list[str] = []
        self.error: str | None = None
        self.dropped_lines = 0

    @property
    def has_text(self) -> bool:
        return bool(self.parts)

    @property
    def text(self) -> str:
        return "".join(self.parts)


def _handle_line(
    raw: bytes,
    transcript: _Transcript,
    emit_text,
    label: str,
) -> None:
    line = raw.decode("utf-8", errors="replace")
    if not line.strip():
        return
    try:
        message = parse_stream_line(line)
    except ProtocolError as exc:
        transcript.dropped_lines += 1
        logger.warning("Dropping stream line from %s: %s", label, exc)
        logger.debug("Dropped line content: %r", line[:500])
        return

    if message.kind is MessageKind.TEXT:
        emit_text(message.text)
    elif message.kind is MessageKind.RESULT:
        # Final result repeats the streamed text; only use it as a fallback.
        if not transcript.has_text:
            emit_text(message.text)
    elif message.kind is MessageKind.ERROR:
        upstream = UpstreamError(message.text)
        transcript.error = upstream.message
        logger.warning("%s reported an error: %s", label, upstream)


async def _consume_stdout(
    stream: asyncio.StreamReader,
    spec: BackendSpec,
    transcript: _Transcript,
    emit_text,
    label: str,
    chunk_size: int,
) -> None:
    """Read stdout to EOF, feeding text into *transcript* via *emit_text*."""
    if not spec.streaming:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while chunk := await stream.read(chunk_size):
            text = decoder.decode(chunk)
            if text:
                emit_text(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            emit_text(tail)
        return

    framer = LineFramer()
    overflows = 0
    while chunk := await stream.read(chunk_size):
        for frame in framer.feed(chunk):
            _handle_line(frame, transcript, emit_text, label)
        if framer.overflows != overflows:
            overflows = framer.overflows
            transcript.dropped_lines += 1
            logger.warning("Dropping oversized stream line from %s", label)
    tail = framer.flush()
    if tail is not None:
        _handle_line(tail, transcript, emit_text, label)


async def _drain_stderr(stream: asyncio.StreamReader, label: str) -> None:
    """Log stderr line by line; never parsed."""
    while line := await stream.readline():
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            logger.warning("%s stderr: %s", label, text)


# ---------------------------------------------------------------------------
# Core invoker
# ---------------------------------------------------------------------------


async def run_on_project(
    project_path: str,
    prompt: str,
    on_event: EventSink | None = None,
    *,
    backend: str | JobBackend = JobBackend.CLAUDE,
    options: ExecutionOptions | None = None,
    cancel: CancellationToken | None = None,
) -> ProjectRunResult:
    """Run the assistant CLI for *backend* in *project_path* with *prompt*.

    Emits ``start`` immediately, ``content`` for every text chunk, then
    exactly one of ``complete`` (process ran) or ``error`` (process could
    not be started).
    """
    spec = get_backend(backend)
    options = options or ExecutionOptions()
    emit = safe_sink(on_event)
    name = get_project_name(project_path)
    label = f"{spec.name} CLI [{name}]"
    started_at = utc_now()

    emit(StartEvent(project=project_path, project_name=name))

    executable = (
        resolve_claude_bin(options.claude_bin)
        if backend in (JobBackend.CLAUDE, JobBackend.CLAUDE.value)
        else spec.executable
    )
    argv = spec.build_argv(prompt, executable)
    env = build_child_env(options.env, spec.cleared_env)

    transcript = _Transcript()

    def emit_text(text: str) -> None:
        transcript.parts.append(text)
        emit(ContentEvent(project=project_path, project_name=name, text=text))

    if cancel is not None and cancel.is_cancelled:
        return _finish(
            project_path, name, started_at, transcript, emit,
            interrupted=RunCancelled(project_path), exit_code=None, spec=spec,
        )

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=project_path,
            env=env,
            **SESSION_KWARGS,
        )
    except OSError as exc:
        failure = ProcessSpawnFailure(argv[0], exc.strerror or str(exc))
        logger.error("%s: %s", label, failure)
        emit(ErrorEvent(project=project_path, project_name=name, error=failure.message))
        return ProjectRunResult(
            path=project_path,
            name=name,
            error=failure.message,
            needs_human=False,
            outcome=RunOutcome.ERROR,
            started_at=started_at,
            completed_at=utc_now(),
        )

    logger.info("%s started (pid %d)", label, proc.pid)
    assert proc.stdout is not None and proc.stderr is not None

    stdout_task = asyncio.create_task(
        _consume_stdout(proc.stdout, spec, transcript, emit_text, label, options.read_chunk_bytes)
    )
    stderr_task = asyncio.create_task(_drain_stderr(proc.stderr, label))
    cancel_task = asyncio.create_task(cancel.wait()) if cancel is not None else None

    exit_task = asyncio.create_task(proc.wait())

    interrupted: EngineError | None = None
    abandoned: set[asyncio.Task] = set()
    try:
        interrupted = await _await_exit(
            {stdout_task, exit_task}, cancel_task, options.timeout_s,
            project_path=project_path, backend_name=spec.name,
        )
        if interrupted is not None:
            logger.warning("%s interrupted: %s", label, interrupted)
            exit_code = await terminate_process_group(proc, grace_s=options.kill_grace_s)
            exit_task.cancel()
            # A grandchild outside the group may still hold the pipes open.
            _, abandoned = await asyncio.wait(
                {stdout_task, stderr_task}, timeout=options.kill_grace_s,
            )
            for task in abandoned:
                logger.warning("%s: pipe still open after kill; abandoning read", label)
                task.cancel()
        else:
            exit_code = await exit_task

        for task in (stdout_task, stderr_task):
            if task not in abandoned:
                await task
    except BaseException:
        # Cancelled or failed mid-read: do not leave the CLI running.
        await terminate_process_group(proc, grace_s=options.kill_grace_s)
        for task in (stdout_task, stderr_task, exit_task):
            task.cancel()
        raise
    finally:
        if cancel_task is not None:
            cancel_task.cancel()

    logger.info("%s exited with code %s", label, exit_code)
    return _finish(
        project_path, name, started_at, transcript, emit,
        interrupted=interrupted, exit_code=exit_code, spec=spec,
    )


async def _await_exit(
    pending: set[asyncio.Task],
    cancel_task: asyncio.Task | None,
    timeout_s: float | None,
    *,
    project_path: str,
    backend_name: str,
) -> EngineError | None:
    """Wait for stdout EOF *and* process exit under a single deadline.

    Returns ``None`` when both finished in time, otherwise the reason the
    wait was cut short.  The caller owns killing the process.
    """
    loop = asyncio.get_running_loop()
    deadline = None if timeout_s is None else loop.time() + timeout_s
    pending = set(pending)

    while pending:
        remaining = None if deadline is None else max(0.0, deadline - loop.time())
        waiters = pending | ({cancel_task} if cancel_task is not None else set())
        done, _ = await asyncio.wait(
            waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED,
        )
        pending -= done
        if not pending:
            break
        if cancel_task is not None and cancel_task in done:
            return RunCancelled(project_path)
        if not done:
            return ExecutionTimeout(backend_name, timeout_s or 0)
    return None


def _finish(
    project_path: str,
    name: str,
    started_at,
    transcript: _Transcript,
    emit: EventSink,
    *,
    interrupted: EngineError | None,
    exit_code: int | None,
    spec: BackendSpec,
) -> ProjectRunResult:
    """Map the process outcome to a result and emit ``complete``."""
    error = transcript.error
    outcome = RunOutcome.ERROR if error else RunOutcome.COMPLETED

    if isinstance(interrupted, RunCancelled):
        error, outcome = interrupted.message, RunOutcome.CANCELLED
    elif isinstance(interrupted, ExecutionTimeout):
        error, outcome = interrupted.message, RunOutcome.TIMED_OUT
    elif exit_code not in (0, None) and error is None:
        error, outcome = AbnormalExit(spec.name, exit_code).message, RunOutcome.ERROR

    output = transcript.text
    matched = matched_patterns(output)
    flagged = bool(matched)
    if flagged:
        logger.info("%s flagged for human review (%s)", name, ", ".join(matched))

    emit(CompleteEvent(
        project=project_path,
        project_name=name,
        output=output,
        needs_human=flagged,
        error=error,
        outcome=outcome,
    ))
    return ProjectRunResult(
        path=project_path,
        name=name,
        output=output,
        error=error,
        needs_human=flagged,
        outcome=outcome,
        started_at=started_at,
        completed_at=utc_now(),
    )
