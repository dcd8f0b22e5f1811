"""Subprocess helpers shared by the pre-check gate and the invoker.

Children are started in their own session (POSIX) so a timeout or
cancellation can stop the whole process group, including anything a
shell pre-check forked, without leaving orphans holding our pipes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys

logger = logging.getLogger(__name__)

# Passed to create_subprocess_* so the child leads its own process group.
SESSION_KWARGS: dict = {} if sys.platform == "win32" else {"start_new_session": True}


def decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, sig)
            return
        except (ProcessLookupError, PermissionError):
            pass
    with contextlib.suppress(ProcessLookupError):
        if sig == getattr(signal, "SIGKILL", None):
            proc.kill()
        else:
            proc.terminate()


async def terminate_process_group(
    proc: asyncio.subprocess.Process,
    *,
    grace_s: float = 5.0,
) -> int | None:
    """Stop *proc* and its group: SIGTERM, then SIGKILL after *grace_s*.

    Returns the exit code once the process has been reaped.
    """
    if proc.returncode is not None:
        return proc.returncode

    _signal_group(proc, signal.SIGTERM)
    try:
        return await asyncio.wait_for(proc.wait(), timeout=grace_s)
    except asyncio.TimeoutError:
        logger.warning("Process %d ignored SIGTERM for %.1fs; killing", proc.pid, grace_s)

    _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
    return await proc.wait()
