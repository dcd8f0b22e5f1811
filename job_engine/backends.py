"""Assistant backend catalogue — how to invoke each supported CLI.

A ``BackendSpec`` knows the executable, the argv for a non-interactive
run of one prompt, whether stdout is the line-delimited ``stream-json``
protocol or plain text, and which credential variables must be removed
from the child environment so the CLI falls back to its own local login.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from job_engine.contracts import JobBackend
from job_engine.errors import UnknownBackend

# Checked in order; first existing path wins, else ``claude`` on PATH.
CLAUDE_CANDIDATE_PATHS: tuple[Path, ...] = (
    Path.home() / ".local" / "bin" / "claude",
    Path.home() / ".claude" / "local" / "claude",
    Path("/usr/local/bin/claude"),
)


@dataclass(frozen=True)
class BackendSpec:
    """Invocation recipe for one assistant CLI."""

    name: str
    executable: str
    args: Callable[[str], list[str]]
    streaming: bool = False
    cleared_env: tuple[str, ...] = field(default_factory=tuple)

    def build_argv(self, prompt: str, executable: str | None = None) -> list[str]:
        return [executable or self.executable, *self.args(prompt)]


def resolve_claude_bin(override: str | None = None) -> str:
    """Locate the Claude CLI binary."""
    if override:
        return override
    for candidate in CLAUDE_CANDIDATE_PATHS:
        if candidate.exists():
            return str(candidate)
    return "claude"


_BACKENDS: dict[str, BackendSpec] = {
    JobBackend.CLAUDE.value: BackendSpec(
        name="Claude",
        executable="claude",
        args=lambda prompt: [
            "--print",
            "--output-format", "stream-json",
            "--verbose",
            prompt,
        ],
        streaming=True,
        cleared_env=("ANTHROPIC_API_KEY",),
    ),
    JobBackend.CODEX.value: BackendSpec(
        name="Codex",
        executable="codex",
        args=lambda prompt: [
            "exec",
            "-m", "gpt-5",
            "-c", 'model_reasoning_effort="high"',
            "--sandbox", "read-only",
            prompt,
        ],
    ),
    JobBackend.GEMINI.value: BackendSpec(
        name="Gemini",
        executable="gemini",
        args=lambda prompt: ["-p", prompt],
    ),
}


def get_backend(name: str | JobBackend) -> BackendSpec:
    """Look up a backend by name (``claude`` / ``codex`` / ``gemini``)."""
    key = name.value if isinstance(name, JobBackend) else str(name)
    spec = _BACKENDS.get(key)
    if spec is None:
        raise UnknownBackend(key, sorted(_BACKENDS))
    return spec


def build_child_env(
    base: Mapping[str, str] | None,
    cleared: tuple[str, ...] = (),
) -> dict[str, str]:
    """Return a fresh environment dict for a child process.

    *base* defaults to a snapshot of ``os.environ``.  Variables named in
    *cleared* are removed from the copy; the host environment is never
    modified.
    """
    env = dict(os.environ if base is None else base)
    for key in cleared:
        env.pop(key, None)
    return env
