"""Per-request deadline and cancellation shared by every upstream call."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, TypeVar


T = TypeVar("T")


class RequestCancelled(RuntimeError):
    """Raised when the caller went away or the request time budget ran out."""


@dataclass
class RequestContext:
    deadline: float | None = None
    call_timeout: float = 30.0
    _cancel_reason: str | None = field(default=None, repr=False)

    @classmethod
    def with_budget(cls, budget_seconds: float | None, *, call_timeout: float = 30.0) -> "RequestContext":
        deadline = time.monotonic() + budget_seconds if budget_seconds else None
        return cls(deadline=deadline, call_timeout=call_timeout)

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    def cancel(self, reason: str = "Request was cancelled.") -> None:
        if self._cancel_reason is None:
            self._cancel_reason = reason

    def check(self) -> None:
        if self._cancel_reason is not None:
            raise RequestCancelled(self._cancel_reason)
        if self.deadline is not None and self.deadline - time.monotonic() <= 0:
            raise RequestCancelled("Search time budget was exceeded.")

    def _call_timeout(self) -> tuple[float, bool]:
        self.check()
        timeout = max(0.1, float(self.call_timeout))
        if self.deadline is not None:
            remaining = self.deadline - time.monotonic()
            if remaining < timeout:
                return remaining, True
        return timeout, False

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await one upstream call under the per-call timeout and remaining budget.

        A call timeout surfaces as ``asyncio.TimeoutError`` so the calling stage
        can degrade; running out of the whole budget raises ``RequestCancelled``.
        """
        try:
            timeout, budget_bound = self._call_timeout()
        except RequestCancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            if budget_bound:
                raise RequestCancelled("Search time budget was exceeded.") from None
            raise


async def guarded(context: RequestContext | None, awaitable: Awaitable[T]) -> T:
    if context is None:
        return await awaitable
    return await context.guard(awaitable)


async def gather_or_cancel(*awaitables: Awaitable[T]) -> list[T]:
    """Like ``asyncio.gather`` but cancels the remaining calls once one raises."""
    tasks = [asyncio.ensure_future(awaitable) for awaitable in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
