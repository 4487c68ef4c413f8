"""Cooperative cancellation shared by batch generation and the upload queue."""

from __future__ import annotations

import asyncio
from typing import Awaitable, List, Optional, TypeVar

from .errors import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """
    A one-shot flag that in-flight work can poll or await.

    A token created with a `parent` is cancelled whenever the parent is.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self._children: List["CancellationToken"] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            for child in self._children:
                child.cancel(reason)
            self._children.clear()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """
    Await `awaitable`, abandoning it if `token` fires first.

    Raises:
        OperationCancelled: the token was cancelled before the work finished.
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()
    if work.done():
        return work.result()
    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise OperationCancelled(token.reason or "Operation cancelled")
