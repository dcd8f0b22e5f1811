"""Run-level helpers — naming, ids, status roll-up and summaries."""

from __future__ import annotations

import logging
import random
import string
import time
from collections.abc import Callable, Iterable
from pathlib import PurePath

from job_engine.contracts import JobStreamEvent, ProjectRunResult, RunOutcome

logger = logging.getLogger(__name__)

# The engine's sole progress channel.  Called synchronously, once per
# lifecycle transition.
EventSink = Callable[[JobStreamEvent], None]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def safe_sink(on_event: EventSink | None) -> EventSink:
    """Wrap *on_event* so a failing consumer cannot abort a run."""
    if on_event is None:
        return lambda event: None

    def _emit(event: JobStreamEvent) -> None:
        try:
            on_event(event)
        except Exception:
            logger.exception(
                "Event sink raised on %s event for %s",
                event.type, event.project_name or event.project,
            )

    return _emit


def get_project_name(project_path: str) -> str:
    """Last path segment of *project_path* (trailing slashes ignored)."""
    name = PurePath(project_path.rstrip("/\\") or project_path).name
    return name or project_path


def _random_suffix(length: int = 7) -> str:
    return "".join(random.choices(_ID_ALPHABET, k=length))


def generate_run_id() -> str:
    """``run_<epoch ms>_<7 base36 chars>``."""
    return f"run_{int(time.time() * 1000)}_{_random_suffix()}"


def run_status(results: Iterable[ProjectRunResult]) -> str:
    """Roll project results up into ``error`` / ``needs-human`` / ``complete``."""
    items = list(results)
    if any(r.error for r in items):
        return "error"
    if any(r.needs_human for r in items):
        return "needs-human"
    return "complete"


def summarize(results: Iterable[ProjectRunResult]) -> str:
    """One-line human summary, e.g. ``"2 completed, 1 skipped"``."""
    items = list(results)
    completed = sum(1 for r in items if not r.pre_check_skipped and not r.error)
    skipped = sum(1 for r in items if r.pre_check_skipped)
    failed = sum(1 for r in items if r.error)
    review = sum(1 for r in items if r.needs_human)

    parts: list[str] = []
    if completed:
        parts.append(f"{completed} completed")
    if skipped:
        parts.append(f"{skipped} skipped")
    if failed:
        parts.append(f"{failed} failed")
    if review:
        parts.append(f"{review} need review")
    return ", ".join(parts) or "No projects processed"


def all_skipped(results: Iterable[ProjectRunResult]) -> bool:
    """True when there was at least one result and every one was skipped."""
    items = list(results)
    return bool(items) and all(r.outcome is RunOutcome.SKIPPED for r in items)
