"""
Persistent storage primitive backing the slow cache tier.
"""

from __future__ import annotations

import asyncio
import os
import sqlite3
import time
import typing as t
from pathlib import Path

import structlog
from platformdirs import user_cache_dir

from reqflow.exceptions import StorageQuotaError

log = structlog.get_logger(__name__)

CACHE_PATH_ENV_VAR = "REQFLOW_CACHE_PATH"


class Storage(t.Protocol):
    """Key/value store of serialized strings."""

    async def read(self, key: str) -> str | None: ...

    async def write(self, key: str, serialized: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...


def resolve_cache_path(*, path: Path | None = None) -> Path:
    """
    Resolve the SQLite database path.

    Parameters
    ----------
    path : Path | None, optional
        Explicit cache file path.

    Returns
    -------
    Path
        Explicit path, else ``REQFLOW_CACHE_PATH``, else the user cache directory.
    """
    if path is not None:
        return path

    env_path = os.getenv(CACHE_PATH_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser().resolve()

    return Path(user_cache_dir(appname="reqflow")) / "responses.sqlite3"


class SqliteStorage:
    """
    SQLite-backed ``Storage``.

    Blocking sqlite3 work runs in a worker thread so the event loop never
    stalls on disk I/O.

    Parameters
    ----------
    path : Path | None, optional
        Database file path, see :func:`resolve_cache_path`.
    max_entries : int | None, optional
        Quota. Writing a new key beyond it raises ``StorageQuotaError``.
    """

    def __init__(self, *, path: Path | None = None, max_entries: int | None = None) -> None:
        self._path = resolve_cache_path(path=path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._max_entries = max_entries
        self._initialize_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._path.as_posix())
        connection.row_factory = sqlite3.Row
        return connection

    def _initialize_schema(self) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS response_cache (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    written_at REAL NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_response_cache_written_at
                ON response_cache (written_at)
                """
            )
            connection.commit()

    def read_sync(self, key: str) -> str | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT value FROM response_cache WHERE key = ?",
                (key,),
            ).fetchone()
        return None if row is None else str(row["value"])

    def write_sync(self, key: str, serialized: str) -> None:
        with self._connect() as connection:
            if self._max_entries is not None:
                exists = connection.execute(
                    "SELECT 1 FROM response_cache WHERE key = ?", (key,)
                ).fetchone()
                (count,) = connection.execute("SELECT COUNT(*) FROM response_cache").fetchone()
                if exists is None and count >= self._max_entries:
                    raise StorageQuotaError(
                        f"Persistent cache is full ({count}/{self._max_entries} entries)"
                    )
            connection.execute(
                """
                INSERT INTO response_cache (key, value, written_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    written_at=excluded.written_at
                """,
                (key, serialized, time.time()),
            )
            connection.commit()

    def remove_sync(self, key: str) -> None:
        with self._connect() as connection:
            connection.execute("DELETE FROM response_cache WHERE key = ?", (key,))
            connection.commit()

    def keys_sync(self) -> list[str]:
        with self._connect() as connection:
            rows = connection.execute("SELECT key FROM response_cache ORDER BY written_at").fetchall()
        return [str(row["key"]) for row in rows]

    def clear_sync(self) -> int:
        """Delete every row and return how many were removed."""
        with self._connect() as connection:
            cursor = connection.execute("DELETE FROM response_cache")
            deleted_count = cursor.rowcount if cursor.rowcount is not None else 0
            connection.commit()
        log.debug(event="Cleared persistent cache", path=self._path.as_posix(), deleted=deleted_count)
        return deleted_count

    async def read(self, key: str) -> str | None:
        return await asyncio.to_thread(self.read_sync, key)

    async def write(self, key: str, serialized: str) -> None:
        await asyncio.to_thread(self.write_sync, key, serialized)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self.remove_sync, key)

    async def keys(self) -> list[str]:
        return await asyncio.to_thread(self.keys_sync)
