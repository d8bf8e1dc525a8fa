"""
Cooperative cancellation for chat turns.

One token is created per turn and threaded through every awaited call.
`guard` races an awaitable against the token so that a pending provider
request is abandoned as soon as the turn is cancelled.
"""

import asyncio
import inspect
from collections.abc import Awaitable
from typing import TypeVar

from vault_copilot.core.errors import OperationCancelledError

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the token fires first."""
        if self.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError(self.reason or "cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        raise OperationCancelledError(self.reason or "cancelled")


async def guarded(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    """`token.guard(awaitable)`, or a plain await when there is no token."""
    if token is None:
        return await awaitable
    return await token.guard(awaitable)
