"""
Public request facade.

A logical call goes through, in order: cache lookup, in-flight join, batch
window (when batchable), then the scheduler, which runs the interceptor
chain and the transport under the retry policy. The outcome is cached and
delivered to every joined caller.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import random
import time
import typing as t
from dataclasses import dataclass
from urllib.parse import urlsplit

import structlog
from pydantic import BaseModel, ConfigDict

from reqflow.batching import BatchCoordinator, BatchSubRequest
from reqflow.cache import ResponseCache
from reqflow.config import OrchestratorConfig, RequestOptions, build_config, build_options
from reqflow.exceptions import AttemptRecord, ConfigurationError, ReqflowError
from reqflow.inflight import InFlightRegistry
from reqflow.interceptors import HeaderInterceptor, Interceptor, InterceptorChain
from reqflow.logging import logging_context
from reqflow.request import Priority, RequestDescriptor, Verb, build_cache_key, cache_key_prefix
from reqflow.retry import RetryPolicy, RetryState
from reqflow.scheduler import RequestScheduler
from reqflow.storage import Storage
from reqflow.transport import HttpxTransport, Transport, TransportAdapter, TransportResponse

log = structlog.get_logger(__name__)


class OutcomeSource(str, enum.Enum):
    NETWORK = "network"
    CACHE = "cache"
    INFLIGHT = "inflight"
    BATCH = "batch"


@dataclass(frozen=True)
class Outcome:
    """
    Result of one logical call.

    Parameters
    ----------
    data : typing.Any
        Payload after response interceptors.
    attempts : tuple[AttemptRecord, ...]
        Physical attempts made for this call. Empty for cache hits.
    source : OutcomeSource
        Where the value came from.
    """

    data: t.Any
    attempts: tuple[AttemptRecord, ...] = ()
    source: OutcomeSource = OutcomeSource.NETWORK


class OrchestratorStats(BaseModel):
    """Read-only diagnostics snapshot."""

    model_config = ConfigDict(frozen=True)

    total_requests: int
    failed_requests: int
    cache_size: int
    cache_hits: int
    cache_misses: int
    cache_hit_rate: float
    cache_evictions: int
    cache_expirations: int
    deduplicated: int
    inflight_started: int
    physical_calls: int
    windows_sealed: int
    batches_sent: int
    batched_requests: int
    average_batch_size: float
    queue_depth: int
    active_calls: int
    dispatched_calls: int
    peak_active_calls: int
    queue_timeouts: int
    retries: int


class RequestOrchestrator:
    """
    Turn logical calls into a disciplined stream of physical calls.

    Construct one per application and pass it to the code that needs it.

    Parameters
    ----------
    transport : Transport | None, optional
        Physical call primitive. Defaults to :class:`HttpxTransport`.
    config : OrchestratorConfig | None, optional
        Base configuration.
    storage : Storage | None, optional
        Persistent cache tier. ``None`` keeps the cache in memory only.
    interceptors : typing.Iterable[Interceptor], optional
        Initial interceptor chain, in order.
    clock : typing.Callable[[], float], optional
        Wall-clock used by the cache.
    rng : random.Random | None, optional
        Jitter source for the retry policy.
    **overrides : typing.Any
        Config fields overriding ``config``.

    Raises
    ------
    ConfigurationError
        If any config field is unknown or invalid.
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        config: OrchestratorConfig | None = None,
        storage: Storage | None = None,
        interceptors: t.Iterable[Interceptor] = (),
        clock: t.Callable[[], float] = time.time,
        rng: random.Random | None = None,
        **overrides: t.Any,
    ) -> None:
        self.config = build_config(config, **overrides)
        self._adapter = TransportAdapter(
            transport=transport or HttpxTransport(),
            default_timeout=self.config.default_timeout,
        )
        self._chain = InterceptorChain()
        if self.config.default_headers:
            self._chain.use(HeaderInterceptor(self.config.default_headers))
        for interceptor in interceptors:
            self._chain.use(interceptor)

        self._cache = ResponseCache(
            ttl=self.config.cache_ttl,
            max_entries=self.config.cache_max_entries,
            storage=storage,
            clock=clock,
        )
        self._inflight = InFlightRegistry()
        self._scheduler = RequestScheduler(
            max_concurrent=self.config.max_concurrent,
            queue_timeout=self.config.queue_timeout,
        )
        self._retry_policy = RetryPolicy(
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            jitter_ratio=self.config.retry_jitter_ratio,
            rng=rng,
        )
        self._batcher = BatchCoordinator(
            sender=self._send_batch,
            delay=self.config.batch_delay,
            max_size=self.config.batch_max_size,
        )
        self._reset_counters()

        log.debug(
            event="Initialized RequestOrchestrator",
            base_url=self.config.base_url,
            max_concurrent=self.config.max_concurrent,
            cache_enabled=self.config.cache_enabled,
            batching_enabled=self.config.batching_enabled,
            persistent_cache=storage is not None,
        )

    @property
    def interceptors(self) -> InterceptorChain:
        return self._chain

    async def __aenter__(self) -> "RequestOrchestrator":
        return self

    async def __aexit__(self, exc_type: t.Any, exc_val: t.Any, exc_tb: t.Any) -> None:
        await self.close()

    # Facade

    async def request(
        self,
        verb: str,
        address: str,
        *,
        params: t.Mapping[str, t.Any] | None = None,
        body: t.Any = None,
        **options: t.Any,
    ) -> t.Any:
        """
        Issue a logical call and return its unwrapped payload.

        Parameters
        ----------
        verb : str
            Request verb.
        address : str
            Absolute address, or a path relative to ``base_url``.
        params : typing.Mapping[str, typing.Any] | None, optional
            Query parameters.
        body : typing.Any, optional
            JSON-serializable body.
        **options : typing.Any
            Fields of :class:`RequestOptions`.

        Raises
        ------
        ReqflowError
            Classified failure.
        """
        descriptor = self.describe(
            verb=verb,
            address=address,
            params=params,
            body=body,
            options=build_options(**options),
        )
        outcome = await self.execute(descriptor)
        return outcome.data

    async def get(self, address: str, params: t.Mapping[str, t.Any] | None = None, **options: t.Any) -> t.Any:
        return await self.request("GET", address, params=params, **options)

    async def post(self, address: str, body: t.Any = None, **options: t.Any) -> t.Any:
        return await self.request("POST", address, body=body, **options)

    async def put(self, address: str, body: t.Any = None, **options: t.Any) -> t.Any:
        return await self.request("PUT", address, body=body, **options)

    async def delete(
        self, address: str, params: t.Mapping[str, t.Any] | None = None, **options: t.Any
    ) -> t.Any:
        return await self.request("DELETE", address, params=params, **options)

    def describe(
        self,
        *,
        verb: str,
        address: str,
        params: t.Mapping[str, t.Any] | None = None,
        body: t.Any = None,
        options: RequestOptions | None = None,
    ) -> RequestDescriptor:
        """Build a resolved descriptor from facade arguments."""
        options = options or RequestOptions()
        return RequestDescriptor(
            address=self.resolve_address(address),
            verb=t.cast(Verb, verb),
            headers=dict(options.headers),
            params=dict(params or {}),
            body=body,
            priority=options.priority,
            timeout=options.timeout,
            ttl=options.ttl,
            max_attempts=options.max_attempts,
            batch_endpoint=options.batch_endpoint,
            queue_timeout=options.queue_timeout,
            skip_cache=options.skip_cache,
            skip_batch=options.skip_batch,
            skip_retry=options.skip_retry,
            ignored_params=self.config.ignored_key_params,
        )

    def resolve_address(self, address: str) -> str:
        """
        Resolve ``address`` against ``base_url``.

        Raises
        ------
        ConfigurationError
            If the address is relative and no base URL is configured.
        """
        if not isinstance(address, str) or not address.strip():
            raise ConfigurationError("Request address must be a non-empty string")
        parts = urlsplit(address)
        if parts.scheme and parts.netloc:
            return address
        if self.config.base_url is None:
            raise ConfigurationError(f"Cannot resolve relative address {address!r} without base_url")
        return f"{self.config.base_url}/{address.lstrip('/')}"

    # Core

    async def execute(self, descriptor: RequestDescriptor) -> Outcome:
        """
        Run one logical call to completion.

        Parameters
        ----------
        descriptor : RequestDescriptor
            Request to run. Relative addresses are resolved first.

        Returns
        -------
        Outcome
            Payload, attempt history, and source.
        """
        descriptor = self._admit(descriptor)
        self._ensure_sweeper()
        self.total_requests += 1
        with logging_context(request_key=descriptor.key):
            try:
                return await self._execute(descriptor)
            except ReqflowError as error:
                self.failed_requests += 1
                log.debug(event="Request failed", error_class=type(error).__name__, error=error.message)
                raise

    def _admit(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        address = self.resolve_address(descriptor.address)
        ignored = descriptor.ignored_params or self.config.ignored_key_params
        if address == descriptor.address and ignored == descriptor.ignored_params:
            return descriptor
        return descriptor.evolve(address=address, ignored_params=ignored)

    def _is_cacheable(self, descriptor: RequestDescriptor) -> bool:
        return (
            self.config.cache_enabled
            and not descriptor.skip_cache
            and descriptor.verb in self.config.cacheable_verbs
        )

    def _batch_endpoint_for(self, descriptor: RequestDescriptor) -> str | None:
        if not self.config.batching_enabled or descriptor.skip_batch:
            return None
        return descriptor.batch_endpoint or self.config.batch_endpoint

    async def _execute(self, descriptor: RequestDescriptor) -> Outcome:
        if not self._is_cacheable(descriptor):
            return await self._produce(descriptor=descriptor, cacheable=False)

        entry = await self._cache.get(descriptor.key)
        if entry is not None:
            log.debug(event="Cache hit", key=descriptor.key)
            return Outcome(data=entry.value, source=OutcomeSource.CACHE)

        outcome, joined = await self._inflight.join(
            descriptor.key,
            lambda: self._produce(descriptor=descriptor, cacheable=True),
        )
        if joined:
            return dataclasses.replace(outcome, source=OutcomeSource.INFLIGHT)
        return outcome

    async def _produce(self, *, descriptor: RequestDescriptor, cacheable: bool) -> Outcome:
        endpoint = self._batch_endpoint_for(descriptor)
        if endpoint is not None:
            outcome = await self._execute_batched(descriptor=descriptor, endpoint=endpoint)
        else:
            value, state = await self._call_with_retry(descriptor=descriptor, run_response=True)
            outcome = Outcome(data=value, attempts=tuple(state.history))
        if cacheable:
            await self._cache.set(descriptor.key, outcome.data, ttl=descriptor.ttl)
        return outcome

    def _max_attempts_for(self, descriptor: RequestDescriptor) -> int:
        if descriptor.skip_retry or not self.config.retry_enabled:
            return 1
        return descriptor.max_attempts or self.config.max_attempts

    async def _call_with_retry(
        self,
        *,
        descriptor: RequestDescriptor,
        run_response: bool,
    ) -> tuple[t.Any, RetryState]:
        """
        Run attempts through the scheduler until success or a final failure.

        Each attempt re-enters the scheduler and the full interceptor chain.
        The slot is released while backing off.

        Returns
        -------
        tuple[typing.Any, RetryState]
            Attempt result and the retry bookkeeping.
        """
        state = RetryState(max_attempts=self._max_attempts_for(descriptor))
        label = f"{descriptor.verb.value} {descriptor.address}"
        while True:
            state.begin()
            started_at = time.monotonic()
            try:
                result = await self._scheduler.submit(
                    lambda: self._attempt(descriptor=descriptor, run_response=run_response),
                    priority=descriptor.priority,
                    queue_timeout=descriptor.queue_timeout,
                    label=label,
                )
            except ReqflowError as error:
                decision = self._retry_policy.should_retry(error, state)
                state.record(
                    started_at=started_at,
                    error=error,
                    delay=decision.delay if decision.retry else None,
                )
                if not decision.retry:
                    raise error.with_attempts(state.history)
                self.retries += 1
                log.info(
                    event="Retrying request",
                    label=label,
                    attempt=state.attempts,
                    max_attempts=state.max_attempts,
                    delay=round(decision.delay, 4),
                    error_class=type(error).__name__,
                )
                await asyncio.sleep(delay=decision.delay)
                continue
            state.record(started_at=started_at)
            return result, state

    async def _attempt(self, *, descriptor: RequestDescriptor, run_response: bool) -> t.Any:
        prepared = await self._chain.run_request(descriptor)
        response, data = await self._adapter.call(prepared)
        if not run_response:
            return response, data
        return await self._chain.run_response(response, data, prepared)

    async def _execute_batched(self, *, descriptor: RequestDescriptor, endpoint: str) -> Outcome:
        state = RetryState(max_attempts=1)
        state.begin()
        started_at = time.monotonic()
        try:
            prepared = await self._chain.run_request(descriptor)
            data, response = await self._batcher.enqueue(
                endpoint=self.resolve_address(endpoint),
                priority=descriptor.priority,
                sub_request=BatchSubRequest(
                    address=prepared.address,
                    verb=prepared.verb.value,
                    headers=prepared.headers,
                    body=prepared.body if prepared.verb not in (Verb.GET, Verb.HEAD) else None,
                ),
            )
            value = await self._chain.run_response(
                t.cast(TransportResponse, response), data, prepared
            )
        except ReqflowError as error:
            state.record(started_at=started_at, error=error)
            raise error.with_attempts(state.history)
        state.record(started_at=started_at)
        return Outcome(data=value, attempts=tuple(state.history), source=OutcomeSource.BATCH)

    async def _send_batch(
        self,
        endpoint: str,
        priority: Priority,
        payload: list[dict[str, t.Any]],
    ) -> tuple[TransportResponse, t.Any]:
        descriptor = RequestDescriptor(
            address=endpoint,
            verb=Verb.POST,
            body=payload,
            priority=priority,
            skip_cache=True,
            skip_batch=True,
        )
        result, _ = await self._call_with_retry(descriptor=descriptor, run_response=False)
        return t.cast(tuple[TransportResponse, t.Any], result)

    # Maintenance

    async def preload(
        self,
        addresses: t.Iterable[str | tuple[str, t.Mapping[str, t.Any]]],
        **options: t.Any,
    ) -> int:
        """
        Warm the cache with low-priority, single-attempt GETs.

        Failures are logged, never raised.

        Returns
        -------
        int
            Number of addresses fetched successfully.
        """
        options = {"priority": Priority.LOW, "skip_retry": True, **options}
        targets = [(item, None) if isinstance(item, str) else item for item in addresses]
        results = await asyncio.gather(
            *(self.get(address, params, **options) for address, params in targets),
            return_exceptions=True,
        )
        loaded = 0
        for (address, _), result in zip(targets, results):
            if isinstance(result, Exception):
                log.warning(event="Preload failed", address=address, error=str(object=result))
            else:
                loaded += 1
        log.info(event="Preloaded addresses", requested=len(targets), loaded=loaded)
        return loaded

    async def invalidate(
        self,
        address: str,
        params: t.Mapping[str, t.Any] | None = None,
        *,
        verb: str = "GET",
    ) -> int:
        """
        Evict cached responses for ``address``.

        With ``params`` only that exact request is evicted; otherwise every
        cached variant of the address is.

        Returns
        -------
        int
            Number of entries evicted.
        """
        resolved = self.resolve_address(address)
        if params is None:
            return await self._cache.invalidate_prefix(cache_key_prefix(address=resolved, verb=verb))
        key = build_cache_key(
            address=resolved,
            verb=verb,
            params=params,
            ignored_params=self.config.ignored_key_params,
        )
        return int(await self._cache.delete(key))

    async def clear_cache(self) -> None:
        await self._cache.clear()

    async def sweep_cache(self) -> int:
        return await self._cache.sweep()

    def flush(self) -> int:
        """Seal every open batch window now."""
        return self._batcher.flush()

    def cancel_all(self, reason: str = "Cancelled") -> int:
        """
        Fail every queued call and every sub-request in an open batch window.

        Dispatched calls are not preempted.

        Returns
        -------
        int
            Number of calls cancelled.
        """
        cancelled = self._scheduler.cancel_all(reason=reason) + self._batcher.cancel_all(reason=reason)
        log.info(event="Cancelled pending calls", cancelled=cancelled)
        return cancelled

    def get_stats(self) -> OrchestratorStats:
        sealed = self._batcher.batches_sent
        return OrchestratorStats(
            total_requests=self.total_requests,
            failed_requests=self.failed_requests,
            cache_size=len(self._cache),
            cache_hits=self._cache.hits,
            cache_misses=self._cache.misses,
            cache_hit_rate=self._cache.hit_rate,
            cache_evictions=self._cache.evictions,
            cache_expirations=self._cache.expirations,
            deduplicated=self._inflight.joined,
            inflight_started=self._inflight.started,
            physical_calls=self._adapter.physical_calls,
            windows_sealed=self._batcher.windows_sealed,
            batches_sent=sealed,
            batched_requests=self._batcher.batched_requests,
            average_batch_size=self._batcher.batched_requests / sealed if sealed else 0.0,
            queue_depth=self._scheduler.queue_depth,
            active_calls=self._scheduler.active_count,
            dispatched_calls=self._scheduler.dispatched,
            peak_active_calls=self._scheduler.peak_active,
            queue_timeouts=self._scheduler.queue_timeouts,
            retries=self.retries,
        )

    def reset_stats(self) -> None:
        self._reset_counters()
        self._cache.hits = self._cache.misses = 0
        self._cache.evictions = self._cache.expirations = 0
        self._inflight.joined = self._inflight.started = 0
        self._adapter.physical_calls = 0
        self._batcher.windows_sealed = 0
        self._batcher.batches_sent = self._batcher.batched_requests = 0
        self._scheduler.dispatched = 0
        self._scheduler.peak_active = self._scheduler.queue_timeouts = 0

    def _reset_counters(self) -> None:
        self.total_requests = 0
        self.failed_requests = 0
        self.retries = 0

    def _ensure_sweeper(self) -> None:
        if self.config.cache_enabled and self.config.cache_sweep_interval is not None:
            self._cache.start_sweeper(interval=self.config.cache_sweep_interval)

    async def close(self) -> None:
        """Stop the sweeper, flush open batch windows, and close the transport."""
        await self._cache.stop_sweeper()
        await self._batcher.close()
        await self._adapter.aclose()
        log.debug(event="RequestOrchestrator closed")
