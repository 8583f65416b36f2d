"""Per-session ordered execution queue."""

from __future__ import annotations

import asyncio
import contextvars
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TaskFactory = Callable[[], Awaitable[T]]

_running_slot: contextvars.ContextVar[object | None] = contextvars.ContextVar(
    "tandem_running_slot", default=None)


class OrderedExecutionQueue:
    """Runs submitted tasks one at a time, in the order they were submitted.

    Each submission chains onto the current tail. A task body does not start
    until every earlier task has settled, even while an earlier task is
    suspended on its own awaits. A failing task only fails its own caller; the
    chain continues. Once the last pending task settles the tail is dropped so
    the next submission starts a fresh chain.
    """

    def __init__(self, name: str = "", task_timeout: float | None = None) -> None:
        self.name = name
        self.task_timeout = task_timeout
        self._tail: asyncio.Future[None] | None = None
        self._pending = 0
        self._current: object | None = None

    @property
    def idle(self) -> bool:
        """True if no task is running or waiting."""
        return self._pending == 0

    @property
    def pending(self) -> int:
        return self._pending

    def in_worker(self) -> bool:
        """True if the caller is the task body this queue is currently running."""
        return self._current is not None and _running_slot.get() is self._current

    def submit(self, task_factory: TaskFactory[T]) -> asyncio.Task[T]:
        """Register *task_factory* at the tail and return a task for its result.

        Registration is synchronous, so submission order is call order no matter
        when the returned tasks get scheduled. Cancelling the returned task
        before its body starts removes it from the chain without letting later
        tasks overtake the ones ahead of it.
        """
        loop = asyncio.get_running_loop()
        previous = self._tail
        done: asyncio.Future[None] = loop.create_future()
        self._tail = done
        self._pending += 1
        task = loop.create_task(self._run(previous, done, task_factory))
        task.add_done_callback(lambda _: self._release(previous, done))
        return task

    async def run_ordered(self, task_factory: TaskFactory[T]) -> T:
        """Submit *task_factory* and wait for its own result."""
        return await self.submit(task_factory)

    async def _run(
        self,
        previous: asyncio.Future[None] | None,
        done: asyncio.Future[None],
        task_factory: TaskFactory[T],
    ) -> T:
        if previous is not None:
            await asyncio.shield(previous)
        self._current = done
        token = _running_slot.set(done)
        try:
            if self.task_timeout is None:
                return await task_factory()
            return await asyncio.wait_for(task_factory(), self.task_timeout)
        except asyncio.TimeoutError:
            logger.warning("Queue %s: task exceeded %ss deadline", self.name, self.task_timeout)
            raise
        finally:
            _running_slot.reset(token)
            self._current = None

    def _release(self, previous: asyncio.Future[None] | None, done: asyncio.Future[None]) -> None:
        # A task cancelled while waiting settles only once its predecessor has.
        if previous is None or previous.done():
            self._settle(done)
        else:
            previous.add_done_callback(lambda _: self._settle(done))

    def _settle(self, done: asyncio.Future[None]) -> None:
        self._pending -= 1
        done.set_result(None)
        if self._tail is done:
            self._tail = None
