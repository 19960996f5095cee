import pytest

from tests.mocks.transports import FakeClock, FakeTransport, MemoryStorage


@pytest.fixture(autouse=True)
def isolated_cache_path(monkeypatch, tmp_path):
    """Keep every test away from the user's real cache directory."""
    monkeypatch.setenv("REQFLOW_CACHE_PATH", (tmp_path / "cache.sqlite3").as_posix())


@pytest.fixture
def transport() -> FakeTransport:
    """
    Create a transport echoing the called address.

    Returns
    -------
    FakeTransport
        Scripted transport.
    """
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()
