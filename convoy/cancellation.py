"""
convoy.cancellation - Cooperative cancellation shared across suspension points.

A :class:`CancellationToken` is created by the caller and threaded through
the catalog, the completion engine and the tool loop. Every await that may
suspend (HTTP response, each stream chunk, each tool execution) goes through
:meth:`CancellationToken.guard`, which checks the token before suspending,
races the awaitable against cancellation, and checks again afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from convoy.errors import OperationCancelled

logger = logging.getLogger("convoy.cancellation")

T = TypeVar("T")


class CancellationToken:
    """A shared, externally settable cancellation flag.

    ``cancel()`` may be called from any thread (e.g. a signal handler); the
    wake-up is handed to the event loop that first awaited the token.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        logger.debug("Cancellation requested: %s", reason)

        if self._event is None or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._event.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._event.set)

    def raise_if_cancelled(self, partial_text: str = "") -> None:
        if self._cancelled:
            raise OperationCancelled(
                f"Operation cancelled: {self._reason}", partial_text=partial_text
            )

    def _waiter_event(self) -> asyncio.Event:
        if self._event is None:
            self._loop = asyncio.get_running_loop()
            self._event = asyncio.Event()
            # cancel() may have raced with creation
            if self._cancelled:
                self._event.set()
        return self._event

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        await self._waiter_event().wait()

    async def guard(self, awaitable: Awaitable[T], *, partial_text: str = "") -> T:
        """Await *awaitable* unless the token fires first.

        On cancellation the in-flight awaitable is cancelled and
        :class:`OperationCancelled` is raised.
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled(partial_text)

        task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task not in done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self.raise_if_cancelled(partial_text)

        result = task.result()
        self.raise_if_cancelled(partial_text)
        return result


async def guarded(token: CancellationToken | None, awaitable: Awaitable[T], *, partial_text: str = "") -> T:
    """``token.guard(awaitable)`` that tolerates ``token=None``."""
    if token is None:
        return await awaitable
    return await token.guard(awaitable, partial_text=partial_text)


def check(token: CancellationToken | None, partial_text: str = "") -> None:
    if token is not None:
        token.raise_if_cancelled(partial_text)


__all__ = ["CancellationToken", "check", "guarded"]
