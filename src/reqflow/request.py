"""
Request descriptors and cache/dedup key derivation.
"""

from __future__ import annotations

import dataclasses
import enum
import functools
import json
import typing as t
from dataclasses import dataclass, field

from reqflow.exceptions import ConfigurationError


class Priority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank is admitted first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class Verb(str, enum.Enum):
    GET = "GET"
    HEAD = "HEAD"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


def _canonical_json(value: t.Any) -> str:
    return json.dumps(
        obj=value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def build_cache_key(
    *,
    address: str,
    verb: str,
    params: t.Mapping[str, t.Any] | None = None,
    body: t.Any = None,
    ignored_params: t.Iterable[str] = (),
) -> str:
    """
    Build the canonical cache/dedup key for a request.

    Parameters
    ----------
    address : str
        Resolved target address.
    verb : str
        Request verb.
    params : typing.Mapping[str, typing.Any] | None, optional
        Query parameters.
    body : typing.Any, optional
        Request body. Part of the key so distinct payloads never collide.
    ignored_params : typing.Iterable[str], optional
        Query parameter names excluded from the key (e.g. cache busters).

    Returns
    -------
    str
        Key of the form ``VERB address {canonical-json}``.
    """
    ignored = frozenset(ignored_params)
    kept_params = {
        name: value
        for name, value in (params or {}).items()
        if name not in ignored and value is not None
    }
    canonical = _canonical_json({"params": kept_params, "body": body})
    return f"{verb.upper()} {address} {canonical}"


def cache_key_prefix(*, address: str, verb: str) -> str:
    """Return the key prefix shared by every request to ``verb address``."""
    return f"{verb.upper()} {address} "


@dataclass(frozen=True)
class RequestDescriptor:
    """
    Fully described logical request.

    Descriptors are immutable; interceptors derive new ones with
    :meth:`evolve` or :meth:`with_headers`.
    """

    address: str
    verb: Verb = Verb.GET
    headers: t.Mapping[str, str] = field(default_factory=dict)
    params: t.Mapping[str, t.Any] = field(default_factory=dict)
    body: t.Any = None
    priority: Priority = Priority.NORMAL
    timeout: float | None = None
    ttl: float | None = None
    max_attempts: int | None = None
    batch_endpoint: str | None = None
    queue_timeout: float | None = None
    skip_cache: bool = False
    skip_batch: bool = False
    skip_retry: bool = False
    ignored_params: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not isinstance(self.address, str) or not self.address.strip():
            raise ConfigurationError("Request address must be a non-empty string")
        try:
            verb = Verb(self.verb.upper() if isinstance(self.verb, str) else self.verb)
            priority = Priority(self.priority)
        except ValueError as error:
            raise ConfigurationError(str(object=error)) from error
        object.__setattr__(self, "verb", verb)
        object.__setattr__(self, "priority", priority)

    @functools.cached_property
    def key(self) -> str:
        """Stable cache/dedup key."""
        return build_cache_key(
            address=self.address,
            verb=self.verb.value,
            params=self.params,
            body=self.body,
            ignored_params=self.ignored_params,
        )

    def evolve(self, **changes: t.Any) -> "RequestDescriptor":
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    def with_headers(self, headers: t.Mapping[str, str]) -> "RequestDescriptor":
        """Return a copy whose headers are merged with ``headers``."""
        return self.evolve(headers={**self.headers, **headers})
