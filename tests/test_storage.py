from pathlib import Path

import pytest

from reqflow.exceptions import StorageQuotaError
from reqflow.storage import CACHE_PATH_ENV_VAR, SqliteStorage, resolve_cache_path


@pytest.fixture
def storage(tmp_path: Path) -> SqliteStorage:
    """
    Create a SQLite storage in a temporary directory.

    Returns
    -------
    SqliteStorage
        Fresh storage instance.
    """
    return SqliteStorage(path=tmp_path / "nested" / "cache.sqlite3")


def test_resolve_cache_path_prefers_explicit_path(tmp_path: Path):
    assert resolve_cache_path(path=tmp_path / "x.db") == tmp_path / "x.db"


def test_resolve_cache_path_reads_environment(monkeypatch, tmp_path: Path):
    monkeypatch.setenv(CACHE_PATH_ENV_VAR, (tmp_path / "env.db").as_posix())
    assert resolve_cache_path() == (tmp_path / "env.db").resolve()


def test_resolve_cache_path_defaults_to_user_cache_dir(monkeypatch):
    monkeypatch.delenv(CACHE_PATH_ENV_VAR, raising=False)
    path = resolve_cache_path()
    assert path.name == "responses.sqlite3"
    assert "reqflow" in path.as_posix()


def test_sync_roundtrip(storage: SqliteStorage):
    assert storage.path.parent.exists()
    storage.write_sync("a", "1")
    storage.write_sync("b", "2")
    storage.write_sync("a", "3")

    assert storage.read_sync("a") == "3"
    assert sorted(storage.keys_sync()) == ["a", "b"]

    storage.remove_sync("a")
    assert storage.read_sync("a") is None
    assert storage.clear_sync() == 1
    assert storage.keys_sync() == []


def test_quota_rejects_new_keys_only(tmp_path: Path):
    storage = SqliteStorage(path=tmp_path / "quota.db", max_entries=1)
    storage.write_sync("a", "1")
    storage.write_sync("a", "2")

    with pytest.raises(StorageQuotaError):
        storage.write_sync("b", "1")
    assert storage.read_sync("a") == "2"


@pytest.mark.asyncio
async def test_async_interface(storage: SqliteStorage):
    await storage.write("key", "value")
    assert await storage.read("key") == "value"
    assert await storage.keys() == ["key"]
    await storage.remove("key")
    assert await storage.read("key") is None
