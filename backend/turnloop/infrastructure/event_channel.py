"""Event Channel — single-producer async event sequence with a deferred result.

Invariants:
    - push() never blocks and never drops: buffering is unbounded
    - The result future resolves when the terminal event is pushed, whether or
      not anything has consumed the sequence
    - Exactly one terminal event per channel; any push afterwards raises
      EventChannelClosedError
    - fail(exc) ends the channel abnormally: iteration re-raises exc after the
      already-buffered events, result() raises exc

Design Decisions:
    - asyncio.Queue with a private end marker instead of an async generator:
      production and consumption are decoupled tasks
    - The channel holds a reference to its producer task so the run is not
      garbage collected while only the channel is referenced
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

from turnloop.core.errors import EventChannelClosedError

logger = logging.getLogger(__name__)

E = TypeVar("E")
R = TypeVar("R")

_END = object()


class _Failure:
    def __init__(self, exc: BaseException):
        self.exc = exc


class EventChannel(Generic[E, R]):
    """Push/consume primitive with a terminal-event-triggered result."""

    def __init__(
        self,
        is_terminal: Callable[[E], bool],
        extract_result: Callable[[E], R],
    ):
        self._is_terminal = is_terminal
        self._extract_result = extract_result
        self._queue: asyncio.Queue = asyncio.Queue()
        self._result: asyncio.Future = asyncio.get_running_loop().create_future()
        self._result.add_done_callback(_consume_exception)
        self._closed = False
        self._task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def attach(self, task: asyncio.Task) -> None:
        """Keep a reference to the producer task."""
        self._task = task

    def push(self, event: E) -> None:
        if self._closed:
            raise EventChannelClosedError(getattr(event, "type", None))
        self._queue.put_nowait(event)
        if self._is_terminal(event):
            self._closed = True
            self._queue.put_nowait(_END)
            self._result.set_result(self._extract_result(event))

    def fail(self, exc: BaseException) -> None:
        """Terminate abnormally. No-op if the channel already terminated."""
        if self._closed:
            logger.warning("Ignoring failure on closed event channel: %s", exc)
            return
        self._closed = True
        self._queue.put_nowait(_Failure(exc))
        self._result.set_exception(exc)

    async def result(self) -> R:
        return await asyncio.shield(self._result)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, _Failure):
                raise item.exc
            yield item


def _consume_exception(fut: asyncio.Future) -> None:
    """Mark a failed result as retrieved; consumers may only iterate."""
    if not fut.cancelled():
        fut.exception()
