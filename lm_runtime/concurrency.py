"""
Concurrency guard

- SingleFlight collapses concurrent calls for the same key into one underlying
  operation and fans its result (or exception) out to every caller.
- GenerationGate is a capacity-1 semaphore that serializes decode loops so
  two generations never share recurrent state on the same sessions.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, TypeVar

T = TypeVar("T")


class SingleFlight:
    """Request de-duplicator keyed by an arbitrary hashable"""

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, "asyncio.Task[Any]"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` once for ``key``; concurrent callers with the same key await the same run

        A caller being cancelled does not cancel the shared operation for the
        other waiters.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved when every waiter was cancelled
        if not task.cancelled():
            task.exception()


class GenerationGate:
    """
    Single-flight semaphore around generation

    Lazily binds the asyncio.Semaphore so the gate can be created outside a
    running event loop.
    """

    def __init__(self, limit: int = 1):
        self.limit = limit
        self._semaphore: Optional[asyncio.Semaphore] = None
        self.waiting = 0

    def _get(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.limit)
        return self._semaphore

    def locked(self) -> bool:
        return self._semaphore is not None and self._semaphore.locked()

    async def acquire(self) -> None:
        self.waiting += 1
        try:
            await self._get().acquire()
        finally:
            self.waiting -= 1

    def release(self) -> None:
        self._get().release()

    async def __aenter__(self) -> "GenerationGate":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()
