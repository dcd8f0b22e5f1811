"""Job engine error hierarchy.

Every error carries typed fields (not just a message string),
supports ``to_dict()`` for serialisation into stream events and logs,
and has a readable ``__str__``.

Most of these never escape the engine: the scheduler folds them into a
``ProjectRunResult.error`` field or an ``error`` stream event.  Only
``UnknownBackend`` reaches the caller, because it signals a programming
error detected before any project work starts.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base error for all job engine failures."""

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.detail}

    def __str__(self) -> str:
        return self.message


class PreCheckFailure(EngineError):
    """The pre-check command exited non-zero, timed out, or failed to start."""

    def __init__(self, command: str, reason: str, *, timed_out: bool = False) -> None:
        self.command = command
        self.reason = reason
        self.timed_out = timed_out
        if timed_out:
            msg = f"Command timed out after {reason}: {command}"
        else:
            msg = f"Command failed: {command}"
            if reason:
                msg = f"{msg}\n{reason}"
        super().__init__(
            msg,
            detail={"command": command, "timed_out": timed_out},
        )


class ProcessSpawnFailure(EngineError):
    """The assistant executable could not be started."""

    def __init__(self, executable: str, reason: str) -> None:
        self.executable = executable
        self.reason = reason
        super().__init__(
            f"Failed to start '{executable}': {reason}",
            detail={"executable": executable, "reason": reason},
        )


class ProtocolError(EngineError):
    """A stdout line could not be parsed as a structured stream event."""

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(
            f"Unparseable stream line ({len(line)} chars): {reason}",
            detail={"reason": reason, "line_length": len(line)},
        )


class UpstreamError(EngineError):
    """The assistant process reported an explicit error event."""

    def __init__(self, message: str) -> None:
        super().__init__(message, detail={})


class AbnormalExit(EngineError):
    """The assistant process exited non-zero without an explicit error."""

    def __init__(self, backend: str, exit_code: int | None) -> None:
        self.backend = backend
        self.exit_code = exit_code
        super().__init__(
            f"{backend} CLI exited with code {exit_code}",
            detail={"backend": backend, "exit_code": exit_code},
        )


class ExecutionTimeout(EngineError):
    """The assistant process exceeded its execution timeout and was killed."""

    def __init__(self, backend: str, timeout_s: float) -> None:
        self.backend = backend
        self.timeout_s = timeout_s
        super().__init__(
            f"{backend} CLI timed out after {timeout_s:g}s",
            detail={"backend": backend, "timeout_s": timeout_s},
        )


class RunCancelled(EngineError):
    """The run was cancelled before or during a project's execution."""

    def __init__(self, project: str, *, started: bool = True) -> None:
        self.project = project
        self.started = started
        super().__init__(
            "cancelled" if started else "cancelled before start",
            detail={"project": project, "started": started},
        )


class UnknownBackend(EngineError):
    """Requested assistant backend is not registered."""

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            f"Backend '{name}' not found. Available: {', '.join(available)}",
            detail={"name": name, "available": available},
        )

