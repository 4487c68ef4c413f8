"""
Serialized, retrying upload queue for composite artifacts.

One processing loop owns the task list and uploads the head task until it
completes, fails terminally, or is cancelled; only then does it move on, so
uploads happen strictly in submission order with at most one in flight.

Per task:

    pending -> uploading -> completed
                         -> retrying -> uploading -> ...
                         -> failed          (after `max_retries` attempts)
    any non-terminal state -> paused (offline; not counted as an attempt)

Every transition is published as an `UploadEvent` to the task's
`on_progress` callback and to all `subscribe()`d event queues.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
import uuid

from .cancellation import CancellationToken, run_cancellable
from .connectivity import ConnectivityMonitor
from .errors import OperationCancelled
from .storage import ObjectStorage

logger = logging.getLogger(__name__)


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    RETRYING = "retrying"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED)


@dataclass(frozen=True)
class UploadEvent:
    task_id: str
    status: UploadStatus
    attempt: int
    next_retry_in: Optional[float] = None  # seconds
    url: Optional[str] = None
    error: Optional[BaseException] = None


@dataclass(eq=False)
class UploadTask:
    payload: bytes = field(repr=False)
    destination_key: str
    content_type: str = "image/png"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempt: int = 0
    status: UploadStatus = UploadStatus.PENDING
    on_progress: Optional[Callable[[UploadEvent], None]] = field(default=None, repr=False)
    on_complete: Optional[Callable[[str], None]] = field(default=None, repr=False)
    on_error: Optional[Callable[[BaseException], None]] = field(default=None, repr=False)
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    future: Optional[asyncio.Future] = field(default=None, repr=False)

    def __await__(self):
        """Awaiting a task yields its public URL or raises its terminal error."""
        return self.future.__await__()


def _mark_retrieved(future: asyncio.Future) -> None:
    # Terminal errors are delivered through on_error/events; awaiting is optional.
    if not future.cancelled():
        future.exception()


class UploadQueue:
    def __init__(
        self,
        storage: ObjectStorage,
        *,
        monitor: Optional[ConnectivityMonitor] = None,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.storage = storage
        self.monitor = monitor
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._tasks: Deque[UploadTask] = deque()
        self._listeners: List[asyncio.Queue] = []
        self._worker: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(
        self,
        payload: bytes,
        destination_key: str,
        *,
        content_type: str = "image/png",
        on_progress: Optional[Callable[[UploadEvent], None]] = None,
        on_complete: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
        token: Optional[CancellationToken] = None,
    ) -> UploadTask:
        """Append an upload to the tail of the queue and make sure the loop is running."""
        if self._closed:
            raise RuntimeError("Upload queue is closed")
        task = UploadTask(
            payload=payload,
            destination_key=destination_key,
            content_type=content_type,
            on_progress=on_progress,
            on_complete=on_complete,
            on_error=on_error,
            token=CancellationToken(parent=token),
            future=asyncio.get_running_loop().create_future(),
        )
        task.future.add_done_callback(_mark_retrieved)
        self._tasks.append(task)
        logger.debug("Queued upload %s -> %s (%d in queue)", task.id, destination_key, len(self._tasks))
        self._ensure_worker()
        return task

    def subscribe(self) -> asyncio.Queue:
        """Return a queue that receives every `UploadEvent`; `None` marks shutdown."""
        listener: asyncio.Queue = asyncio.Queue()
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: asyncio.Queue) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def paused(self) -> bool:
        return bool(self._tasks) and self._tasks[0].status == UploadStatus.PAUSED

    def __len__(self) -> int:
        return len(self._tasks)

    def status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in (
            UploadStatus.PENDING, UploadStatus.UPLOADING, UploadStatus.RETRYING, UploadStatus.PAUSED
        )}
        for task in self._tasks:
            counts[task.status.value] += 1
        counts["total"] = len(self._tasks)
        return counts

    def cancel(self, task_id: str) -> bool:
        """Cancel a queued task; an in-flight upload or backoff wait is abandoned at once."""
        for task in list(self._tasks):
            if task.id != task_id:
                continue
            if task is self._tasks[0] and self._worker is not None:
                task.token.cancel("Upload cancelled")
            else:
                self._tasks.remove(task)
                self._finish_cancelled(task)
            return True
        return False

    def clear(self) -> int:
        """Cancel every task that is not currently in flight."""
        waiting = list(self._tasks)[1:] if self._worker is not None else list(self._tasks)
        for task in waiting:
            self.cancel(task.id)
        return len(waiting)

    async def join(self) -> None:
        await self._idle.wait()

    async def close(self) -> None:
        """Stop the loop and cancel everything still queued."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        while self._tasks:
            self._finish_cancelled(self._tasks.popleft())
        self._idle.set()
        for listener in self._listeners:
            listener.put_nowait(None)
        self._listeners.clear()

    async def __aenter__(self) -> "UploadQueue":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._idle.clear()
            self._worker = asyncio.create_task(self._run())

    def _is_online(self) -> bool:
        return self.monitor is None or self.monitor.online

    async def _run(self) -> None:
        try:
            while self._tasks:
                task = self._tasks[0]
                if task.token.cancelled:
                    self._tasks.popleft()
                    self._finish_cancelled(task)
                    continue
                if not self._is_online():
                    await self._suspend(task)
                    continue
                await self._attempt(task)
        finally:
            self._worker = None
            self._idle.set()

    async def _suspend(self, task: UploadTask) -> None:
        logger.info("Offline: pausing upload queue at task %s (attempt %d)", task.id, task.attempt)
        self._transition(task, UploadStatus.PAUSED)
        try:
            await run_cancellable(self.monitor.wait_online(), task.token)
        except OperationCancelled:
            return
        logger.info("Online: resuming upload queue at task %s", task.id)

    async def _attempt(self, task: UploadTask) -> None:
        self._transition(task, UploadStatus.UPLOADING)
        try:
            url = await run_cancellable(
                self.storage.put(task.destination_key, task.payload, task.content_type),
                task.token,
            )
        except OperationCancelled:
            return
        except Exception as exc:  # noqa: BLE001
            await self._handle_failure(task, exc)
            return

        self._tasks.popleft()
        task.status = UploadStatus.COMPLETED
        self._publish(task, UploadEvent(task.id, UploadStatus.COMPLETED, task.attempt, url=url))
        self._invoke(task.on_complete, url)
        if not task.future.done():
            task.future.set_result(url)

    async def _handle_failure(self, task: UploadTask, exc: Exception) -> None:
        if not self._is_online():
            # Connection dropped mid-upload; the next iteration pauses without charging an attempt.
            logger.info("Upload %s interrupted by connectivity loss: %s", task.id, exc)
            return

        task.attempt += 1
        if task.attempt >= self.max_retries:
            self._tasks.popleft()
            task.status = UploadStatus.FAILED
            logger.error("Upload %s failed after %d attempts: %s", task.id, task.attempt, exc)
            self._publish(task, UploadEvent(task.id, UploadStatus.FAILED, task.attempt, error=exc))
            self._invoke(task.on_error, exc)
            if not task.future.done():
                task.future.set_exception(exc)
            return

        delay = self.backoff_base * task.attempt
        logger.warning(
            "Upload %s attempt %d/%d failed: %s. Retrying in %.1fs",
            task.id,
            task.attempt,
            self.max_retries,
            exc,
            delay,
        )
        self._transition(task, UploadStatus.RETRYING, next_retry_in=delay)
        try:
            await run_cancellable(self._sleep(delay), task.token)
        except OperationCancelled:
            return

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _transition(self, task: UploadTask, status: UploadStatus, next_retry_in: Optional[float] = None) -> None:
        task.status = status
        self._publish(task, UploadEvent(task.id, status, task.attempt, next_retry_in=next_retry_in))

    def _publish(self, task: UploadTask, event: UploadEvent) -> None:
        logger.debug("Upload %s -> %s (attempt %d)", event.task_id, event.status.value, event.attempt)
        self._invoke(task.on_progress, event)
        for listener in self._listeners:
            listener.put_nowait(event)

    def _finish_cancelled(self, task: UploadTask) -> None:
        task.status = UploadStatus.CANCELLED
        self._publish(task, UploadEvent(task.id, UploadStatus.CANCELLED, task.attempt))
        if not task.future.done():
            task.future.set_exception(OperationCancelled(f"Upload {task.id} cancelled"))

    @staticmethod
    def _invoke(callback: Optional[Callable[[Any], None]], value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Upload callback failed: %s", exc)
