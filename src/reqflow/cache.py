"""
Tiered time-to-live response cache.

The fast tier is an in-process LRU map. The optional slow tier is any
``Storage`` (e.g. SQLite). Reads consult the fast tier first and back-fill it
from the slow tier; writes go to both.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
import typing as t
from collections import OrderedDict
from dataclasses import dataclass

import structlog

from reqflow.exceptions import StorageQuotaError
from reqflow.storage import Storage

log = structlog.get_logger(__name__)

DEFAULT_NAMESPACE = "reqflow:"
_STORAGE_ERRORS = (OSError, sqlite3.Error)


@dataclass
class CacheEntry:
    """
    Cached value and its lifetime.

    Parameters
    ----------
    key : str
        Cache key.
    value : typing.Any
        Stored outcome.
    created_at : float
        Clock time when stored.
    expires_at : float
        Clock time after which the entry is logically absent.
    last_access : float
        Clock time of the latest hit, used for LRU eviction.
    """

    key: str
    value: t.Any
    created_at: float
    expires_at: float
    last_access: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def serialize(self) -> str:
        return json.dumps(
            obj={
                "value": self.value,
                "created_at": self.created_at,
                "expires_at": self.expires_at,
            },
            separators=(",", ":"),
        )

    @classmethod
    def deserialize(cls, *, key: str, serialized: str, now: float) -> "CacheEntry":
        """
        Rebuild an entry from its persisted form.

        Raises
        ------
        ValueError
            If the stored data is malformed.
        """
        payload = json.loads(s=serialized)
        if not isinstance(payload, dict) or "value" not in payload:
            raise ValueError("Persisted cache entry is not an object with a value")
        created_at = float(payload["created_at"])
        expires_at = float(payload["expires_at"])
        if expires_at < created_at:
            raise ValueError("Persisted cache entry expires before it was created")
        return cls(
            key=key,
            value=payload["value"],
            created_at=created_at,
            expires_at=expires_at,
            last_access=now,
        )


class ResponseCache:
    """
    TTL cache with lazy expiry, periodic sweeps and LRU capacity eviction.

    Parameters
    ----------
    ttl : float
        Default time-to-live in seconds.
    max_entries : int
        Fast-tier capacity. The least recently accessed entry is evicted
        first when it is exceeded, regardless of TTL.
    storage : Storage | None, optional
        Slow persistent tier. ``None`` runs memory-only.
    clock : typing.Callable[[], float], optional
        Wall-clock source, injectable for tests.
    namespace : str, optional
        Prefix applied to keys in the persistent tier.
    """

    def __init__(
        self,
        *,
        ttl: float,
        max_entries: int,
        storage: Storage | None = None,
        clock: t.Callable[[], float] = time.time,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self._ttl = ttl
        self._max_entries = max_entries
        self._storage = storage
        self._clock = clock
        self._namespace = namespace
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._sweeper: asyncio.Task[None] | None = None

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def _storage_key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> CacheEntry | None:
        """
        Return the fresh entry for ``key`` or ``None``.

        An expired entry is removed on read and reported as absent.
        """
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            if entry.is_expired(now):
                self._expire(key=key)
                await self._remove_persisted(key=key)
            else:
                entry.last_access = now
                self._entries.move_to_end(key)
                self.hits += 1
                return entry

        entry = await self._read_persisted(key=key, now=now)
        if entry is None:
            self.misses += 1
            return None
        self._store_fast(entry=entry)
        self.hits += 1
        log.debug(event="Back-filled fast tier from persistent cache", key=key)
        return entry

    async def set(self, key: str, value: t.Any, ttl: float | None = None) -> CacheEntry:
        """
        Store ``value`` under ``key`` in every configured tier.

        Parameters
        ----------
        key : str
            Cache key.
        value : typing.Any
            Outcome to cache. Must be JSON serializable to reach the slow tier.
        ttl : float | None, optional
            Per-entry override of the default TTL.

        Returns
        -------
        CacheEntry
            The stored entry.
        """
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + (self._ttl if ttl is None else ttl),
            last_access=now,
        )
        self._store_fast(entry=entry)
        await self._write_persisted(entry=entry)
        return entry

    async def delete(self, key: str) -> bool:
        """Drop one entry from both tiers. Returns whether anything was removed."""
        removed = self._entries.pop(key, None) is not None
        if self._storage is not None and await self._safe_read(key=key) is not None:
            removed = True
            await self._remove_persisted(key=key)
        return removed

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``. Returns the count."""
        doomed = {key for key in self._entries if key.startswith(prefix)}
        for key in doomed:
            del self._entries[key]
        if self._storage is not None:
            for key in await self._persisted_keys():
                if key.startswith(prefix):
                    doomed.add(key)
                    await self._remove_persisted(key=key)
        log.debug(event="Invalidated cache prefix", prefix=prefix, removed=len(doomed))
        return len(doomed)

    async def clear(self) -> None:
        self._entries.clear()
        if self._storage is not None:
            for key in await self._persisted_keys():
                await self._remove_persisted(key=key)
        log.debug(event="Cleared response cache")

    async def sweep(self) -> int:
        """
        Remove every expired entry from both tiers.

        Corrupt persisted entries are removed as well.

        Returns
        -------
        int
            Number of entries removed.
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._expire(key=key)
        removed = len(expired)

        if self._storage is not None:
            for key in await self._persisted_keys():
                serialized = await self._safe_read(key=key)
                if serialized is None:
                    continue
                try:
                    entry = CacheEntry.deserialize(key=key, serialized=serialized, now=now)
                except (ValueError, TypeError, KeyError):
                    entry = None
                if entry is None or entry.is_expired(now):
                    await self._remove_persisted(key=key)
                    removed += 1
        if removed:
            log.debug(event="Swept expired cache entries", removed=removed)
        return removed

    def start_sweeper(self, interval: float) -> None:
        """Start the periodic sweep task on the running loop, once."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(
            self._sweep_forever(interval=interval),
            name="reqflow_cache_sweeper",
        )

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self, *, interval: float) -> None:
        while True:
            await asyncio.sleep(delay=interval)
            try:
                await self.sweep()
            except Exception as error:
                log.error(event="Cache sweep failed", error=str(object=error))

    def _store_fast(self, *, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        while len(self._entries) > self._max_entries:
            evicted_key, _ = self._entries.popitem(last=False)
            self.evictions += 1
            log.debug(event="Evicted least recently used entry", key=evicted_key)

    def _expire(self, *, key: str) -> None:
        self._entries.pop(key, None)
        self.expirations += 1

    async def _persisted_keys(self) -> list[str]:
        if self._storage is None:
            return []
        try:
            keys = await self._storage.keys()
        except _STORAGE_ERRORS as error:
            log.warning(event="Persistent cache listing failed", error=str(object=error))
            return []
        return [key[len(self._namespace) :] for key in keys if key.startswith(self._namespace)]

    async def _safe_read(self, *, key: str) -> str | None:
        if self._storage is None:
            return None
        try:
            return await self._storage.read(self._storage_key(key))
        except _STORAGE_ERRORS as error:
            log.warning(event="Persistent cache read failed", key=key, error=str(object=error))
            return None

    async def _read_persisted(self, *, key: str, now: float) -> CacheEntry | None:
        serialized = await self._safe_read(key=key)
        if serialized is None:
            return None
        try:
            entry = CacheEntry.deserialize(key=key, serialized=serialized, now=now)
        except (ValueError, TypeError, KeyError) as error:
            log.warning(event="Purging corrupt persistent cache entry", key=key, error=str(object=error))
            await self._remove_persisted(key=key)
            return None
        if entry.is_expired(now):
            self.expirations += 1
            await self._remove_persisted(key=key)
            return None
        return entry

    async def _write_persisted(self, *, entry: CacheEntry) -> None:
        if self._storage is None:
            return
        try:
            serialized = entry.serialize()
        except (TypeError, ValueError) as error:
            log.debug(event="Value not persistable; fast tier only", key=entry.key, error=str(object=error))
            return
        storage_key = self._storage_key(entry.key)
        try:
            await self._storage.write(storage_key, serialized)
            return
        except StorageQuotaError:
            log.info(event="Persistent cache quota reached; sweeping", key=entry.key)
        except _STORAGE_ERRORS as error:
            log.warning(event="Persistent cache write failed", key=entry.key, error=str(object=error))
            return

        await self.sweep()
        try:
            await self._storage.write(storage_key, serialized)
        except (StorageQuotaError, *_STORAGE_ERRORS) as error:
            log.warning(
                event="Skipping persistent cache write after sweep",
                key=entry.key,
                error=str(object=error),
            )

    async def _remove_persisted(self, *, key: str) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.remove(self._storage_key(key))
        except _STORAGE_ERRORS as error:
            log.warning(event="Persistent cache removal failed", key=key, error=str(object=error))
