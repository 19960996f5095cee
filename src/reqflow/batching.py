"""
Batch window coordination.

Sub-requests sharing a merge endpoint and priority class accumulate in a
window until its timer fires or it reaches ``max_size``. Each sealed window
issues exactly one physical call whose body is the ordered list of
sub-requests; the response list is demultiplexed back by correlation id.
"""

from __future__ import annotations

import asyncio
import time
import typing as t
import uuid
from dataclasses import dataclass, field

import structlog

from reqflow.exceptions import BatchItemError, ProtocolMismatchError, RequestCancelledError
from reqflow.request import Priority

log = structlog.get_logger(__name__)

BatchKey = tuple[str, Priority]
BatchSender = t.Callable[[str, Priority, list[dict[str, t.Any]]], t.Awaitable[tuple[t.Any, t.Any]]]


def new_correlation_id() -> str:
    return str(object=uuid.uuid4())


@dataclass(frozen=True)
class BatchSubRequest:
    """One logical request carried inside a merged physical call."""

    address: str
    verb: str
    headers: t.Mapping[str, str] = field(default_factory=dict)
    body: t.Any = None
    id: str = field(default_factory=new_correlation_id)

    def to_payload(self) -> dict[str, t.Any]:
        return {
            "id": self.id,
            "address": self.address,
            "verb": self.verb,
            "headers": dict(self.headers),
            "body": self.body,
        }


@dataclass
class _PendingSubRequest:
    """A sub-request waiting for its window to seal."""

    sub_request: BatchSubRequest
    future: asyncio.Future[tuple[t.Any, t.Any]]


@dataclass
class _BatchWindow:
    """Open accumulation window for one batch key."""

    batch_key: BatchKey
    opened_at: float
    entries: list[_PendingSubRequest] = field(default_factory=list)
    timer: asyncio.Task[None] | None = None
    sealed: bool = False


def format_batch_key(batch_key: BatchKey) -> str:
    endpoint, priority = batch_key
    return f"{priority.value}:{endpoint}"


class BatchCoordinator:
    """
    Manage batch windows and fan merged responses back out.

    Parameters
    ----------
    sender : BatchSender
        Issues the physical merged call for ``(endpoint, priority, payload)``
        and returns ``(response, decoded_body)``.
    delay : float
        Seconds a window stays open after its first sub-request.
    max_size : int
        Sub-request count that seals a window immediately.
    """

    def __init__(self, *, sender: BatchSender, delay: float, max_size: int) -> None:
        self._sender = sender
        self._delay = delay
        self._max_size = max_size
        self._windows: dict[BatchKey, _BatchWindow] = {}
        self._processing: set[asyncio.Task[None]] = set()

        self.windows_sealed = 0
        self.batches_sent = 0
        self.batched_requests = 0

        log.debug(event="Initialized BatchCoordinator", delay=delay, max_size=max_size)

    @property
    def pending_count(self) -> int:
        return sum(len(window.entries) for window in self._windows.values())

    @property
    def open_windows(self) -> int:
        return len(self._windows)

    async def enqueue(
        self,
        *,
        endpoint: str,
        priority: Priority,
        sub_request: BatchSubRequest,
    ) -> tuple[t.Any, t.Any]:
        """
        Add a sub-request to the open window and await its own result.

        Parameters
        ----------
        endpoint : str
            Merge endpoint address.
        priority : Priority
            Priority class; part of the batch key.
        sub_request : BatchSubRequest
            Sub-request carrying its correlation id.

        Returns
        -------
        tuple[typing.Any, typing.Any]
            The sub-request's ``data`` and the merged physical response.

        Raises
        ------
        BatchItemError
            If the merge endpoint reported an error for this sub-request.
        ProtocolMismatchError
            If the response omitted this sub-request or was not a list.
        """
        loop = asyncio.get_running_loop()
        batch_key: BatchKey = (endpoint, priority)
        pending = _PendingSubRequest(sub_request=sub_request, future=loop.create_future())

        window = self._windows.get(batch_key)
        if window is None:
            window = _BatchWindow(batch_key=batch_key, opened_at=time.monotonic())
            window.timer = asyncio.create_task(
                self._window_timer(window=window),
                name=f"batch_window_timer_{format_batch_key(batch_key)}",
            )
            self._windows[batch_key] = window
            log.debug(
                event="Opened batch window",
                batch_key=format_batch_key(batch_key),
                delay=self._delay,
            )
        window.entries.append(pending)
        log.debug(
            event="Queued sub-request for batch",
            batch_key=format_batch_key(batch_key),
            correlation_id=sub_request.id,
            pending_count=len(window.entries),
        )

        if len(window.entries) >= self._max_size:
            log.debug(
                event="Batch size reached",
                batch_key=format_batch_key(batch_key),
                max_size=self._max_size,
            )
            self._seal(window=window)

        return await pending.future

    async def _window_timer(self, *, window: _BatchWindow) -> None:
        try:
            await asyncio.sleep(delay=self._delay)
        except asyncio.CancelledError:
            log.debug(event="Window timer cancelled", batch_key=format_batch_key(window.batch_key))
            raise
        log.debug(event="Batch window elapsed", batch_key=format_batch_key(window.batch_key))
        self._seal(window=window)

    def _seal(self, *, window: _BatchWindow) -> None:
        if window.sealed:
            return
        window.sealed = True
        if self._windows.get(window.batch_key) is window:
            del self._windows[window.batch_key]
        timer = window.timer
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()
        window.timer = None
        self.windows_sealed += 1

        task = asyncio.create_task(
            self._process_window(window=window),
            name=f"batch_submit_{format_batch_key(window.batch_key)}_{uuid.uuid4()}",
        )
        self._processing.add(task)
        task.add_done_callback(self._processing.discard)

    async def _process_window(self, *, window: _BatchWindow) -> None:
        live = [pending for pending in window.entries if not pending.future.done()]
        if not live:
            log.debug(event="Sealed window has no live sub-requests", batch_key=format_batch_key(window.batch_key))
            return

        endpoint, priority = window.batch_key
        payload = [pending.sub_request.to_payload() for pending in live]
        log.info(
            event="Submitting batch",
            batch_key=format_batch_key(window.batch_key),
            request_count=len(live),
        )
        self.batches_sent += 1
        self.batched_requests += len(live)
        try:
            response, data = await self._sender(endpoint, priority, payload)
        except asyncio.CancelledError:
            self._fail_all(requests=live, error=RequestCancelledError("Batch call was cancelled"))
            raise
        except Exception as error:
            log.error(
                event="Batch submission failed",
                batch_key=format_batch_key(window.batch_key),
                error=str(object=error),
            )
            self._fail_all(requests=live, error=error)
            return

        if not isinstance(data, list):
            self._fail_all(
                requests=live,
                error=ProtocolMismatchError("Batch response is not a list of results"),
            )
            return
        seen = self._apply_results(requests=live, results=data, response=response)
        log.info(
            event="Mapped batch results to sub-requests",
            batch_key=format_batch_key(window.batch_key),
            resolved_count=len(seen),
            request_count=len(live),
        )
        self._fail_missing_results(requests=live, seen=seen)

    def _apply_results(
        self,
        *,
        requests: list[_PendingSubRequest],
        results: list[t.Any],
        response: t.Any,
    ) -> set[str]:
        """
        Resolve each sub-request from its result item.

        Returns
        -------
        set[str]
            Correlation ids found in the response.
        """
        by_id = {pending.sub_request.id: pending for pending in requests}
        seen: set[str] = set()
        for item in results:
            correlation_id = item.get("id") if isinstance(item, dict) else None
            if correlation_id is None:
                log.debug(event="Batch result missing id")
                continue
            pending = by_id.get(correlation_id)
            if pending is None:
                log.warning(event="Batch result for unknown id", correlation_id=correlation_id)
                continue
            seen.add(correlation_id)
            if pending.future.done():
                continue
            if item.get("error") is not None:
                pending.future.set_exception(_item_error(detail=item["error"]))
            else:
                pending.future.set_result((item.get("data"), response))
        return seen

    def _fail_missing_results(self, *, requests: list[_PendingSubRequest], seen: set[str]) -> None:
        missing = [pending for pending in requests if pending.sub_request.id not in seen]
        if not missing:
            return
        log.error(event="Missing batch results", missing_count=len(missing))
        for pending in missing:
            if not pending.future.done():
                pending.future.set_exception(
                    ProtocolMismatchError(
                        f"Server omitted result for sub-request {pending.sub_request.id}"
                    )
                )

    @staticmethod
    def _fail_all(*, requests: list[_PendingSubRequest], error: BaseException) -> None:
        for pending in requests:
            if not pending.future.done():
                pending.future.set_exception(error)

    def flush(self) -> int:
        """Seal every open window now. Returns the number sealed."""
        windows = list(self._windows.values())
        for window in windows:
            self._seal(window=window)
        return len(windows)

    def cancel_all(self, reason: str = "Cancelled") -> int:
        """
        Drop every open window, failing its sub-requests.

        Returns
        -------
        int
            Number of sub-requests failed.
        """
        failed = 0
        for window in list(self._windows.values()):
            window.sealed = True
            if window.timer is not None and not window.timer.done():
                window.timer.cancel()
            for pending in window.entries:
                if not pending.future.done():
                    pending.future.set_exception(RequestCancelledError(reason))
                    failed += 1
        self._windows.clear()
        return failed

    async def close(self) -> None:
        """Flush open windows and wait for their merged calls to settle."""
        self.flush()
        if self._processing:
            await asyncio.gather(*self._processing, return_exceptions=True)
        log.debug(event="BatchCoordinator closed")


def _item_error(*, detail: t.Any) -> BatchItemError:
    if isinstance(detail, dict):
        message = str(object=detail.get("message") or detail)
        status = detail.get("status")
        return BatchItemError(
            message,
            detail=detail,
            status=status if isinstance(status, int) else None,
        )
    return BatchItemError(str(object=detail), detail=detail)
