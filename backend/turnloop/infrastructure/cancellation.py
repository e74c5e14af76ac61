"""Cancellation Token — one token threaded through an entire run.

Invariants:
    - cancel() is idempotent and never raises
    - race() cancels the inner work when the token fires first and raises
      RunCancelledError; the inner work's own exceptions pass through unchanged
    - An already-cancelled token makes race() fail before the work starts

Design Decisions:
    - asyncio.Event under the hood: cooperative, single event loop
    - race() over polling `cancelled` between awaits: aborts an in-flight model
      stream or tool call mid-await
"""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from turnloop.core.errors import RunCancelledError

T = TypeVar("T")


class CancellationToken:
    """Caller-owned cancellation signal for one run."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the token fires first."""
        if self.cancelled:
            _close_unstarted(awaitable)
            raise RunCancelledError()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass  # work was abandoned in favour of cancellation
        raise RunCancelledError()


async def race(awaitable: Awaitable[T], cancel: "CancellationToken | None") -> T:
    """race() that tolerates a missing token."""
    if cancel is None:
        return await awaitable
    return await cancel.race(awaitable)


def _close_unstarted(awaitable) -> None:
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()
