"""
Priority-ordered, concurrency-bounded admission of physical calls.

Entries move Queued -> Dispatched -> Settled. Settlement of a dispatched
entry is the only point that admits the next queued one.
"""

from __future__ import annotations

import asyncio
import enum
import heapq
import itertools
import time
import typing as t
from dataclasses import dataclass, field

import structlog

from reqflow.exceptions import QueueTimeoutError, RequestCancelledError
from reqflow.request import Priority

log = structlog.get_logger(__name__)

T = t.TypeVar("T")


class EntryState(enum.Enum):
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    SETTLED = "settled"


@dataclass(order=True)
class QueueEntry:
    """
    A job waiting for an execution slot.

    Ordered by ``(priority rank, admission sequence)``: higher priority first,
    FIFO within a tier.
    """

    sort_key: tuple[int, int]
    priority: Priority = field(compare=False)
    job: t.Callable[[], t.Awaitable[t.Any]] = field(compare=False, repr=False)
    future: asyncio.Future[t.Any] = field(compare=False, repr=False)
    admitted_at: float = field(compare=False)
    deadline: float | None = field(compare=False, default=None)
    label: str = field(compare=False, default="")
    state: EntryState = field(compare=False, default=EntryState.QUEUED)
    task: asyncio.Task[t.Any] | None = field(compare=False, default=None, repr=False)
    timer: asyncio.TimerHandle | None = field(compare=False, default=None, repr=False)


class RequestScheduler:
    """
    Admit jobs while fewer than ``max_concurrent`` are running.

    Parameters
    ----------
    max_concurrent : int
        Maximum number of simultaneously dispatched jobs.
    queue_timeout : float | None, optional
        Default queue-wait deadline in seconds. ``None`` waits indefinitely.
    """

    def __init__(self, *, max_concurrent: int, queue_timeout: float | None = None) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max_concurrent = max_concurrent
        self._queue_timeout = queue_timeout
        self._heap: list[QueueEntry] = []
        self._sequence = itertools.count()
        self._active = 0
        self._queued = 0

        self.dispatched = 0
        self.peak_active = 0
        self.queue_timeouts = 0

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queue_depth(self) -> int:
        return self._queued

    async def submit(
        self,
        job: t.Callable[[], t.Awaitable[T]],
        *,
        priority: Priority = Priority.NORMAL,
        queue_timeout: float | None = None,
        label: str = "",
    ) -> T:
        """
        Queue ``job`` and return its result once it has run.

        Parameters
        ----------
        job : typing.Callable[[], typing.Awaitable[T]]
            Zero-argument coroutine factory, invoked on dispatch.
        priority : Priority, optional
            Admission tier.
        queue_timeout : float | None, optional
            Overrides the scheduler's default queue-wait deadline.
        label : str, optional
            Identifies the entry in logs.

        Raises
        ------
        QueueTimeoutError
            If the job was not dispatched before its deadline.
        """
        loop = asyncio.get_running_loop()
        now = time.monotonic()
        timeout = self._queue_timeout if queue_timeout is None else queue_timeout
        entry = QueueEntry(
            sort_key=(priority.rank, next(self._sequence)),
            priority=priority,
            job=job,
            future=loop.create_future(),
            admitted_at=now,
            deadline=None if timeout is None else now + timeout,
            label=label,
        )
        heapq.heappush(self._heap, entry)
        self._queued += 1
        if timeout is not None:
            entry.timer = loop.call_later(timeout, self._expire, entry)
        log.debug(
            event="Queued request",
            label=label,
            priority=priority.value,
            queue_depth=self._queued,
            active_count=self._active,
        )
        self._pump()

        try:
            return await entry.future
        except asyncio.CancelledError:
            self._abandon(entry=entry)
            raise

    def cancel_all(self, reason: str = "Cancelled") -> int:
        """
        Fail every queued entry. Dispatched entries keep running.

        Returns
        -------
        int
            Number of entries cancelled.
        """
        cancelled = 0
        for entry in self._heap:
            if entry.state is not EntryState.QUEUED:
                continue
            self._leave_queue(entry=entry)
            if not entry.future.done():
                entry.future.set_exception(RequestCancelledError(reason))
            cancelled += 1
        self._heap.clear()
        log.info(event="Cancelled queued requests", cancelled=cancelled, reason=reason)
        return cancelled

    def _pump(self) -> None:
        while self._active < self._max_concurrent and self._heap:
            entry = heapq.heappop(self._heap)
            if entry.state is not EntryState.QUEUED:
                continue
            self._dispatch(entry=entry)

    def _dispatch(self, *, entry: QueueEntry) -> None:
        self._leave_queue(entry=entry)
        entry.state = EntryState.DISPATCHED
        self._active += 1
        self.dispatched += 1
        self.peak_active = max(self.peak_active, self._active)
        log.debug(
            event="Dispatched request",
            label=entry.label,
            priority=entry.priority.value,
            waited=round(time.monotonic() - entry.admitted_at, 4),
            active_count=self._active,
        )
        entry.task = asyncio.create_task(entry.job(), name=f"reqflow_job_{entry.label}")
        entry.task.add_done_callback(lambda task: self._settle(entry=entry, task=task))

    def _settle(self, *, entry: QueueEntry, task: asyncio.Task[t.Any]) -> None:
        entry.state = EntryState.SETTLED
        self._active -= 1
        if not entry.future.done():
            if task.cancelled():
                entry.future.cancel()
            elif task.exception() is not None:
                entry.future.set_exception(t.cast(BaseException, task.exception()))
            else:
                entry.future.set_result(task.result())
        elif not task.cancelled():
            task.exception()
        self._pump()

    def _leave_queue(self, *, entry: QueueEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        if entry.state is EntryState.QUEUED:
            self._queued -= 1
            entry.state = EntryState.SETTLED

    def _expire(self, entry: QueueEntry) -> None:
        entry.timer = None
        if entry.state is not EntryState.QUEUED:
            return
        self._leave_queue(entry=entry)
        self.queue_timeouts += 1
        log.warning(
            event="Queue wait deadline exceeded",
            label=entry.label,
            priority=entry.priority.value,
            queue_depth=self._queued,
        )
        if not entry.future.done():
            entry.future.set_exception(
                QueueTimeoutError(f"Request {entry.label or 'job'} was not dispatched in time")
            )

    def _abandon(self, *, entry: QueueEntry) -> None:
        if entry.state is EntryState.QUEUED:
            self._leave_queue(entry=entry)
        elif entry.state is EntryState.DISPATCHED and entry.task is not None:
            entry.task.cancel()
