"""Concurrency limiter — caps how many projects run at once.

``ConcurrencyLimiter`` is an async context manager wrapping
``asyncio.Semaphore``.  Waiters are released in FIFO order, so projects
start in the order they were queued.  ``active`` and ``peak`` make the
bound observable (the scheduler logs ``peak``; tests assert on it).

No external dependencies beyond the standard library.
"""

from __future__ import annotations

import asyncio


class ConcurrencyLimiter:
    """Async context manager that limits concurrent operations.

    Parameters
    ----------
    max_concurrent:
        Maximum number of operations allowed to run simultaneously
        (default 3).

    Usage::

        limiter = ConcurrencyLimiter(max_concurrent=2)

        async with limiter:
            await run_one_project()
    """

    __slots__ = ("_max", "_semaphore", "_active", "_peak")

    def __init__(self, max_concurrent: int = 3) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active = 0
        self._peak = 0

    async def __aenter__(self) -> None:
        await self._semaphore.acquire()
        self._active += 1
        self._peak = max(self._peak, self._active)

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self._active -= 1
        self._semaphore.release()

    @property
    def active(self) -> int:
        """Number of operations currently holding a permit."""
        return self._active

    @property
    def peak(self) -> int:
        """Highest ``active`` value observed so far."""
        return self._peak

    @property
    def max_concurrent(self) -> int:
        """The configured concurrency limit."""
        return self._max


__all__ = ["ConcurrencyLimiter"]
