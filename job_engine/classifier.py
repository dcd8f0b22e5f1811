"""Needs-human classifier — flags assistant output that likely needs review.

Pure and deterministic: a fixed, ordered set of case-insensitive
patterns is searched anywhere in the text.  The scheduler calls this
once per project, after the assistant process has exited.
"""

from __future__ import annotations

import re

NEEDS_HUMAN_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"needs?.human",
        r"requires?.human",
        r"human.review",
        r"manual.intervention",
        r"please.review",
        r"attention.required",
        r"conflict",
        r"critical.vulnerability",
        r"high.severity",
        r"security.issue",
    )
)


def needs_human(text: str | None) -> bool:
    """Return True if *text* contains any needs-human phrase."""
    if not text:
        return False
    return any(p.search(text) for p in NEEDS_HUMAN_PATTERNS)


def matched_patterns(text: str | None) -> list[str]:
    """Return the source of every pattern that matches *text*, in order."""
    if not text:
        return []
    return [p.pattern for p in NEEDS_HUMAN_PATTERNS if p.search(text)]
