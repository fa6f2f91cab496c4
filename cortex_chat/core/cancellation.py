from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from cortex_chat.core.errors import OperationCancelled

T = TypeVar("T")


class CancelToken:
    """Cancellation signal for one turn, checked at every suspension point."""

    def __init__(self) -> None:
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False
        self.reason: Optional[str] = None

    def _ensure_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._ensure_event().wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first, in which case it is cancelled."""
        if self._cancelled:
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
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
            pass
        raise OperationCancelled(self.reason or "cancelled")
