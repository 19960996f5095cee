from pathlib import Path

import pytest
from typer.testing import CliRunner

from reqflow.cli import main
from reqflow.cli.main import app
from reqflow.storage import SqliteStorage
from tests.mocks.transports import FakeTransport, json_response, scripted

runner = CliRunner()


@pytest.fixture
def cli_transport(monkeypatch) -> FakeTransport:
    """
    Route CLI requests to a fake transport.

    Returns
    -------
    FakeTransport
        Transport returned by the patched factory.
    """
    transport = FakeTransport(lambda call: json_response({"address": call.address, "params": call.params}))
    monkeypatch.setattr(main, "build_transport", lambda: transport)
    return transport


def test_get_prints_payload(cli_transport: FakeTransport):
    result = runner.invoke(
        app,
        [
            "get",
            "/items",
            "--base-url",
            "https://api.test",
            "--param",
            "page=2",
            "--header",
            "X-Client: cli",
        ],
    )
    assert result.exit_code == 0
    assert "https://api.test/items" in result.output
    assert cli_transport.calls[0].params == {"page": "2"}
    assert cli_transport.calls[0].headers["X-Client"] == "cli"


def test_get_with_stats(cli_transport: FakeTransport):
    result = runner.invoke(app, ["get", "https://api.test/items", "--stats"])
    assert result.exit_code == 0
    assert "physical_calls" in result.output


def test_get_reports_failure(cli_transport: FakeTransport):
    cli_transport.handler = scripted(json_response({}, status=404))
    result = runner.invoke(app, ["get", "https://api.test/missing"])
    assert result.exit_code == 1
    assert "ClientError" in result.output


def test_get_rejects_malformed_param(cli_transport: FakeTransport):
    result = runner.invoke(app, ["get", "https://api.test/items", "--param", "novalue"])
    assert result.exit_code != 0
    assert cli_transport.calls == []


def test_get_writes_persistent_cache(cli_transport: FakeTransport, tmp_path: Path):
    cache_path = tmp_path / "cli.sqlite3"
    result = runner.invoke(app, ["get", "https://api.test/items", "--cache-path", cache_path.as_posix()])
    assert result.exit_code == 0
    assert len(SqliteStorage(path=cache_path).keys_sync()) == 1


def test_cache_size_and_clear(tmp_path: Path):
    cache_path = tmp_path / "cli.sqlite3"
    storage = SqliteStorage(path=cache_path)
    storage.write_sync("a", "1")
    storage.write_sync("b", "2")

    size = runner.invoke(app, ["cache", "size", "--cache-path", cache_path.as_posix()])
    assert size.exit_code == 0
    assert "2" in size.output

    cleared = runner.invoke(app, ["cache", "clear", "--cache-path", cache_path.as_posix()])
    assert cleared.exit_code == 0
    assert storage.keys_sync() == []
