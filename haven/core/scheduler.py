"""
Haven — Scheduling Primitives

The session store never touches ambient timers.  It asks a Scheduler to
spawn background tasks and to arm cancellable delayed callbacks, so a
caller can swap in another clock and step through debounce windows without
waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol, Set, runtime_checkable

logger = logging.getLogger("haven.scheduler")


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


@runtime_checkable
class Scheduler(Protocol):
    """What the session store needs from the event loop."""

    def now(self) -> datetime:
        """Current wall-clock instant (UTC)."""
        ...

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        """Run `callback` after `delay` seconds unless cancelled."""
        ...

    def spawn(self, coro: Awaitable[Any], name: str = "") -> "asyncio.Task[Any]":
        """Run `coro` in the background; the caller does not await it."""
        ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio loop."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, callback)

    def spawn(self, coro: Awaitable[Any], name: str = "") -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        # Keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every spawned task, including ones spawned while waiting."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
