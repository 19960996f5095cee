"""
Collapse concurrent identical requests into one physical call.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass

import structlog

log = structlog.get_logger(__name__)

T = t.TypeVar("T")


@dataclass
class _InFlightEntry:
    """A shared call and the number of callers still waiting on it."""

    key: str
    task: asyncio.Task[t.Any]
    waiters: int = 0


class InFlightRegistry:
    """
    At most one entry per key; the entry is removed as soon as its call settles.

    A waiter that is cancelled withdraws from the entry. The shared call is
    cancelled only when the last waiter withdraws.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _InFlightEntry] = {}
        self.joined = 0
        self.started = 0

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def waiters(self, key: str) -> int:
        entry = self._entries.get(key)
        return 0 if entry is None else entry.waiters

    async def join(self, key: str, producer: t.Callable[[], t.Awaitable[T]]) -> tuple[T, bool]:
        """
        Await the shared outcome for ``key``, starting the call if needed.

        Parameters
        ----------
        key : str
            Dedup key.
        producer : typing.Callable[[], typing.Awaitable[T]]
            Starts the physical call. Only invoked when no entry exists.

        Returns
        -------
        tuple[T, bool]
            The shared result and whether this caller joined an existing call.
        """
        entry = self._entries.get(key)
        joined = entry is not None
        if entry is None:
            entry = self._start(key=key, producer=producer)
        else:
            self.joined += 1
            log.debug(event="Joined in-flight request", key=key, waiters=entry.waiters + 1)

        entry.waiters += 1
        try:
            result = await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if not entry.task.done():
                self._withdraw(entry=entry)
            raise
        return result, joined

    def _start(self, *, key: str, producer: t.Callable[[], t.Awaitable[T]]) -> _InFlightEntry:
        async def run() -> T:
            try:
                return await producer()
            finally:
                # Removal happens in the same step that settles the task.
                if self._entries.get(key) is entry:
                    del self._entries[key]

        entry = _InFlightEntry(key=key, task=asyncio.create_task(run()))
        entry.task.add_done_callback(_consume_exception)
        self._entries[key] = entry
        self.started += 1
        log.debug(event="Started in-flight request", key=key)
        return entry

    def _withdraw(self, *, entry: _InFlightEntry) -> None:
        entry.waiters -= 1
        log.debug(event="Waiter withdrew from in-flight request", key=entry.key, waiters=entry.waiters)
        if entry.waiters > 0:
            return
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]
        entry.task.cancel()
        log.debug(event="Cancelled abandoned in-flight request", key=entry.key)


def _consume_exception(task: asyncio.Task[t.Any]) -> None:
    # Waiters observe the exception; avoid "never retrieved" warnings when all withdrew.
    if not task.cancelled():
        task.exception()
