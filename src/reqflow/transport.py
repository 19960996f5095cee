"""
Physical call execution and failure classification.

``Transport`` is the opaque request/response primitive. ``TransportAdapter``
wraps one and is the single place where outcomes are classified into the
reqflow error taxonomy.
"""

from __future__ import annotations

import asyncio
import email.utils
import json
import time
import typing as t
from dataclasses import dataclass, field, replace

import httpx
import structlog

from reqflow.exceptions import (
    ClientError,
    MalformedResponseError,
    NetworkError,
    RateLimitError,
    ReqflowError,
    ServerError,
)
from reqflow.request import RequestDescriptor

log = structlog.get_logger(__name__)

RATE_LIMIT_STATUS = 429


@dataclass(frozen=True)
class TransportResponse:
    """
    Raw response returned by a transport.

    Parameters
    ----------
    status : int
        Status code.
    headers : typing.Mapping[str, str]
        Response headers, names lower-cased.
    content : bytes
        Undecoded body.
    elapsed : float | None
        Seconds spent in the transport, set by ``TransportAdapter``.
    """

    status: int
    headers: t.Mapping[str, str] = field(default_factory=dict)
    content: bytes = b""
    elapsed: float | None = None

    def json(self) -> t.Any:
        """
        Decode the body as JSON.

        Returns
        -------
        typing.Any
            Decoded payload, or ``None`` for an empty body.

        Raises
        ------
        MalformedResponseError
            If the body is not valid JSON.
        """
        if not self.content.strip():
            return None
        try:
            return json.loads(s=self.content)
        except ValueError as error:
            raise MalformedResponseError(
                f"Response body is not valid JSON: {error}", status=self.status
            ) from error


class Transport(t.Protocol):
    """Executes exactly one physical call. Cancellation is task cancellation."""

    async def send(
        self,
        *,
        address: str,
        verb: str,
        headers: t.Mapping[str, str],
        params: t.Mapping[str, t.Any],
        body: t.Any,
    ) -> TransportResponse: ...

    async def aclose(self) -> None: ...


def parse_retry_after(value: str | None, *, now: float | None = None) -> float | None:
    """
    Parse a ``Retry-After`` header into seconds.

    Parameters
    ----------
    value : str | None
        Header value, either delta-seconds or an HTTP date.
    now : float | None, optional
        Current Unix time, for date values.

    Returns
    -------
    float | None
        Non-negative delay in seconds, or ``None`` when absent or unparseable.
    """
    if value is None or not value.strip():
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    current = time.time() if now is None else now
    return max(0.0, parsed.timestamp() - current)


def classify_status(response: TransportResponse) -> ReqflowError | None:
    """
    Map a response status to an error, or ``None`` for success.
    """
    status = response.status
    if status < 400:
        return None
    retry_after = parse_retry_after(response.headers.get("retry-after"))
    if status == RATE_LIMIT_STATUS:
        return RateLimitError(f"Rate limited ({status})", status=status, retry_after=retry_after)
    if status >= 500:
        return ServerError(f"Server error ({status})", status=status, retry_after=retry_after)
    return ClientError(f"Client error ({status})", status=status)


class HttpxTransport:
    """
    ``Transport`` backed by a shared ``httpx.AsyncClient``.

    Parameters
    ----------
    client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
        Builds the client on first use.
    """

    def __init__(
        self,
        *,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=None))
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def send(
        self,
        *,
        address: str,
        verb: str,
        headers: t.Mapping[str, str],
        params: t.Mapping[str, t.Any],
        body: t.Any,
    ) -> TransportResponse:
        client = self._get_client()
        try:
            response = await client.request(
                method=verb,
                url=address,
                headers=dict(headers),
                params={key: _query_value(value) for key, value in params.items()} or None,
                json=body,
            )
        except httpx.TimeoutException as error:
            raise NetworkError(f"Request timed out: {error}", timed_out=True) from error
        except httpx.TransportError as error:
            raise NetworkError(f"Network failure: {error}") from error
        return TransportResponse(
            status=response.status_code,
            headers={key.lower(): value for key, value in response.headers.items()},
            content=response.content,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _query_value(value: t.Any) -> t.Any:
    if isinstance(value, (dict, list)):
        return json.dumps(obj=value, separators=(",", ":"))
    return value


class TransportAdapter:
    """
    Run one physical call for a resolved descriptor and classify the result.

    Parameters
    ----------
    transport : Transport
        Underlying transport primitive.
    default_timeout : float
        Timeout used when the descriptor does not set one.
    """

    def __init__(self, *, transport: Transport, default_timeout: float) -> None:
        self._transport = transport
        self._default_timeout = default_timeout
        self.physical_calls = 0

    async def call(self, descriptor: RequestDescriptor) -> tuple[TransportResponse, t.Any]:
        """
        Execute the descriptor and decode the payload.

        Parameters
        ----------
        descriptor : RequestDescriptor
            Descriptor after request interceptors ran.

        Returns
        -------
        tuple[TransportResponse, typing.Any]
            Raw response and its decoded JSON payload.

        Raises
        ------
        ReqflowError
            Classified failure.
        """
        timeout = descriptor.timeout or self._default_timeout
        self.physical_calls += 1
        log.debug(
            event="Dispatching physical call",
            verb=descriptor.verb.value,
            address=descriptor.address,
            timeout=timeout,
        )
        started = time.monotonic()
        try:
            async with asyncio.timeout(timeout):
                response = await self._transport.send(
                    address=descriptor.address,
                    verb=descriptor.verb.value,
                    headers=descriptor.headers,
                    params=descriptor.params,
                    body=descriptor.body,
                )
        except TimeoutError as error:
            raise NetworkError(f"Request timed out after {timeout}s", timed_out=True) from error
        except OSError as error:
            raise NetworkError(f"Network failure: {error}") from error
        response = replace(response, elapsed=round(time.monotonic() - started, 4))

        failure = classify_status(response)
        if failure is not None:
            log.debug(
                event="Physical call failed",
                address=descriptor.address,
                status=response.status,
                error_class=type(failure).__name__,
            )
            raise failure
        return response, response.json()

    async def aclose(self) -> None:
        await self._transport.aclose()
