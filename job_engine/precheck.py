"""Pre-check gate — a cheap shell command that decides whether to skip a project.

``run_pre_check()`` runs the job's pre-check command in the project
directory, captures merged stdout/stderr and applies the skip policy.
It never raises: a failing, timed-out or unstartable command becomes a
``PreCheckOutcome`` with ``failed=True`` and the failure message as
``output``; the skip decision for that case follows the pre-check's
``on_error`` policy (``legacy`` when unset).

No LLM involvement here.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping

from job_engine.contracts import PreCheck, PreCheckFailurePolicy, PreCheckOutcome, SkipIf
from job_engine.errors import PreCheckFailure
from job_engine.process import SESSION_KWARGS, decode, terminate_process_group

logger = logging.getLogger(__name__)

DEFAULT_PRECHECK_TIMEOUT_S: float = 30.0


def decide_skip(skip_if: SkipIf, output: str, pattern: str | None = None) -> bool:
    """Apply the skip policy to already-trimmed *output*.

    ``matches`` uses an unanchored ``re.search`` without MULTILINE, so
    ``^`` and ``$`` refer to the whole output: ``^SKIP$`` matches
    ``"SKIP"`` but not ``"SKIP\\nextra"``.
    """
    if skip_if is SkipIf.EMPTY:
        return len(output) == 0
    if skip_if is SkipIf.NON_EMPTY:
        return len(output) > 0
    if skip_if is SkipIf.MATCHES:
        if not pattern:
            return False
        return re.search(pattern, output) is not None
    return False


def decide_skip_on_failure(pre_check: PreCheck, message: str) -> bool:
    """Skip decision when the pre-check command itself failed."""
    policy = pre_check.on_error or PreCheckFailurePolicy.LEGACY
    if policy is PreCheckFailurePolicy.LEGACY:
        return pre_check.skip_if is SkipIf.EMPTY
    if policy is PreCheckFailurePolicy.NON_EMPTY:
        return decide_skip(pre_check.skip_if, message, pre_check.pattern)
    return False


def _failed(pre_check: PreCheck, project_path: str, failure: PreCheckFailure) -> PreCheckOutcome:
    skip = decide_skip_on_failure(pre_check, failure.message)
    policy = pre_check.on_error or PreCheckFailurePolicy.LEGACY
    logger.warning(
        "Pre-check failed in %s (policy=%s, skip=%s): %s",
        project_path, policy.value, skip, failure.message,
    )
    return PreCheckOutcome(skip=skip, output=failure.message, failed=True)


async def run_pre_check(
    project_path: str,
    pre_check: PreCheck,
    *,
    timeout_s: float = DEFAULT_PRECHECK_TIMEOUT_S,
    env: Mapping[str, str] | None = None,
) -> PreCheckOutcome:
    """Run *pre_check* in *project_path* and decide whether to skip.

    Parameters
    ----------
    project_path:
        Working directory for the command.
    pre_check:
        Command, skip policy and failure policy.
    timeout_s:
        Wall-clock limit; the command's process group is killed after it.
    env:
        Environment for the command.  ``None`` → inherit.
    """
    command = pre_check.command
    logger.debug("Pre-check in %s: %s", project_path, command)

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=project_path,
            env=dict(env) if env is not None else None,
            **SESSION_KWARGS,
        )
    except OSError as exc:
        return _failed(pre_check, project_path, PreCheckFailure(command, str(exc)))

    try:
        raw_out, raw_err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        await terminate_process_group(proc, grace_s=1.0)
        return _failed(
            pre_check,
            project_path,
            PreCheckFailure(command, f"{timeout_s:g}s", timed_out=True),
        )

    output = (decode(raw_out) + decode(raw_err)).strip()

    if proc.returncode != 0:
        return _failed(pre_check, project_path, PreCheckFailure(command, output))

    skip = decide_skip(pre_check.skip_if, output, pre_check.pattern)
    if skip:
        logger.info("Pre-check skipped %s (skipIf=%s)", project_path, pre_check.skip_if.value)
    return PreCheckOutcome(skip=skip, output=output)
