"""Cancellation token for stopping a job run from outside.

The scheduler and the invoker both watch the same token: projects still
waiting for a slot are resolved as cancelled without being started, and
in-flight assistant processes are terminated.  The token wraps an
``asyncio.Event`` so it can be raced against process I/O.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class CancellationToken:
    """Mutable, idempotent cancellation flag.

    Usage::

        token = CancellationToken()
        task = asyncio.create_task(run_job_on_projects(..., cancel=token))
        ...
        token.cancel()          # stops queued and running projects
        results = await task    # still one result per project
    """

    __slots__ = ("_event", "_callbacks", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], Any]] = []
        self._reason = ""

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "") -> None:
        """Request cancellation.  Callbacks fire on the first call only."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for cb in self._callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancellation callback %r failed", cb)

    async def wait(self) -> None:
        """Block until ``cancel()`` is called."""
        await self._event.wait()

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        """Register *callback*; invoked immediately if already cancelled."""
        self._callbacks.append(callback)
        if self._event.is_set():
            callback()
