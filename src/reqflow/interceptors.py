"""
Ordered request/response interceptor pipeline.

Request and response hooks both run in registration order. Raising from a
hook rejects the call and skips the remaining interceptors. The full chain
runs again on every retry attempt, so hooks must tolerate re-entry.
"""

from __future__ import annotations

import inspect
import typing as t

import structlog

from reqflow.exceptions import MalformedResponseError
from reqflow.request import RequestDescriptor, Verb
from reqflow.transport import TransportResponse

log = structlog.get_logger(__name__)

TokenProvider = t.Callable[[], t.Union[str, None, t.Awaitable[t.Union[str, None]]]]

SAFE_VERBS = frozenset({Verb.GET, Verb.HEAD})


async def _resolve_token(provider: TokenProvider) -> str | None:
    token = provider()
    if inspect.isawaitable(token):
        token = await token
    return t.cast(t.Optional[str], token)


class Interceptor:
    """
    Base interceptor. Both hooks default to the identity transform.
    """

    async def on_request(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        return descriptor

    async def on_response(
        self,
        data: t.Any,
        *,
        response: TransportResponse,
        descriptor: RequestDescriptor,
    ) -> t.Any:
        return data


class InterceptorChain:
    """
    Mutable, ordered collection of interceptors.
    """

    def __init__(self, interceptors: t.Iterable[Interceptor] = ()) -> None:
        self._interceptors: list[Interceptor] = list(interceptors)

    def __len__(self) -> int:
        return len(self._interceptors)

    def __iter__(self) -> t.Iterator[Interceptor]:
        return iter(tuple(self._interceptors))

    def use(self, interceptor: Interceptor) -> Interceptor:
        """Append an interceptor and return it."""
        self._interceptors.append(interceptor)
        return interceptor

    def remove(self, interceptor: Interceptor) -> None:
        self._interceptors.remove(interceptor)

    def clear(self) -> None:
        self._interceptors.clear()

    async def run_request(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        """
        Pass a descriptor through every request hook.

        Parameters
        ----------
        descriptor : RequestDescriptor
            Descriptor as admitted by the orchestrator.

        Returns
        -------
        RequestDescriptor
            Transformed descriptor.
        """
        for interceptor in tuple(self._interceptors):
            descriptor = await interceptor.on_request(descriptor)
        return descriptor

    async def run_response(
        self,
        response: TransportResponse,
        data: t.Any,
        descriptor: RequestDescriptor,
    ) -> t.Any:
        """
        Pass a decoded payload through every response hook.

        Parameters
        ----------
        response : TransportResponse
            Raw response, for status and header inspection.
        data : typing.Any
            Decoded payload.
        descriptor : RequestDescriptor
            Descriptor that produced the response.

        Returns
        -------
        typing.Any
            Final outcome value.
        """
        for interceptor in tuple(self._interceptors):
            data = await interceptor.on_response(data, response=response, descriptor=descriptor)
        return data


class HeaderInterceptor(Interceptor):
    """Add static headers without overriding headers set by the caller."""

    def __init__(self, headers: t.Mapping[str, str]) -> None:
        self._headers = dict(headers)

    async def on_request(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        return descriptor.evolve(headers={**self._headers, **descriptor.headers})


class BearerTokenInterceptor(Interceptor):
    """
    Attach ``Authorization: Bearer <token>``.

    The provider is called on every attempt so a refreshed token is picked up
    by retries.
    """

    def __init__(self, token_provider: TokenProvider, *, header: str = "Authorization") -> None:
        self._token_provider = token_provider
        self._header = header

    async def on_request(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        token = await _resolve_token(self._token_provider)
        if not token:
            return descriptor
        return descriptor.with_headers({self._header: f"Bearer {token}"})


class CsrfTokenInterceptor(Interceptor):
    """Attach an anti-forgery token to state-changing verbs."""

    def __init__(self, token_provider: TokenProvider, *, header: str = "X-CSRF-Token") -> None:
        self._token_provider = token_provider
        self._header = header

    async def on_request(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        if descriptor.verb in SAFE_VERBS:
            return descriptor
        token = await _resolve_token(self._token_provider)
        if not token:
            return descriptor
        return descriptor.with_headers({self._header: token})


class LoggingInterceptor(Interceptor):
    """Log each attempt and its response status. Keeps no per-call state."""

    async def on_request(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        log.info(
            event="Request",
            verb=descriptor.verb.value,
            address=descriptor.address,
            priority=descriptor.priority.value,
            headers={name: "***" for name in descriptor.headers},
        )
        return descriptor

    async def on_response(
        self,
        data: t.Any,
        *,
        response: TransportResponse,
        descriptor: RequestDescriptor,
    ) -> t.Any:
        log.info(
            event="Response",
            verb=descriptor.verb.value,
            address=descriptor.address,
            status=response.status,
            elapsed=response.elapsed,
        )
        return data


class UnwrapInterceptor(Interceptor):
    """
    Unwrap an envelope such as ``{"code": 0, "data": {...}}``.

    Parameters
    ----------
    field : str, optional
        Envelope field holding the payload.
    """

    def __init__(self, field: str = "data") -> None:
        self._field = field

    async def on_response(
        self,
        data: t.Any,
        *,
        response: TransportResponse,
        descriptor: RequestDescriptor,
    ) -> t.Any:
        if not isinstance(data, dict) or self._field not in data:
            raise MalformedResponseError(
                f"Response envelope has no {self._field!r} field", status=response.status
            )
        return data[self._field]
