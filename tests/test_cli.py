import json

import pytest
from psycopg import Notify
from typer.testing import CliRunner

from pgsession import cli as cli_module
from pgsession.core.errors import AcquireFailure


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def use_registry(monkeypatch, registry):
    monkeypatch.setattr(cli_module, "PoolRegistry", lambda: registry)
    return registry


def _json_lines(output):
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def test_notify_encodes_arguments(runner, use_registry, connection):
    result = runner.invoke(cli_module.cli, ["notify", "test", "1", "two", '{"three": 3}'])

    assert result.exit_code == 0, result.output
    assert connection.statements == ["NOTIFY \"test\", '[1,\"two\",{\"three\":3}]'"]
    assert _json_lines(result.stdout) == [{"status": "ok", "channel": "test"}]
    assert use_registry.released == [connection]
    assert use_registry.closed


def test_notify_raw_payload(runner, use_registry, connection):
    result = runner.invoke(cli_module.cli, ["notify", "test", "plain text", "--raw"])

    assert result.exit_code == 0, result.output
    assert connection.statements == ["NOTIFY \"test\", 'plain text'"]


def test_notify_raw_accepts_one_argument(runner, use_registry, connection):
    result = runner.invoke(cli_module.cli, ["notify", "test", "a", "b", "--raw"])

    assert result.exit_code == 2
    assert connection.statements == []


def test_notify_invalid_channel_fails(runner, use_registry, connection):
    result = runner.invoke(cli_module.cli, ["notify", "bad-name", "1"])

    assert result.exit_code == 1
    assert connection.statements == []


def test_query_prints_rows(runner, use_registry, connection):
    connection.results["SELECT"] = [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]

    result = runner.invoke(cli_module.cli, ["query", "SELECT id, name FROM accounts ORDER BY id"])

    assert result.exit_code == 0, result.output
    assert _json_lines(result.stdout) == [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]
    assert connection.statements == ["SELECT id, name FROM accounts ORDER BY id"]


def test_query_in_transaction(runner, use_registry, connection):
    result = runner.invoke(cli_module.cli, ["query", "UPDATE accounts SET name = 'c'", "--transaction"])

    assert result.exit_code == 0, result.output
    assert connection.statements == ["BEGIN", "UPDATE accounts SET name = 'c'", "COMMIT"]


def test_query_reports_acquire_failure(runner, use_registry):
    use_registry.acquire_error = AcquireFailure("couldn't get a connection after 30.00 sec")

    result = runner.invoke(cli_module.cli, ["query", "SELECT 1"])

    assert result.exit_code == 1
    assert use_registry.closed


def test_listen_prints_notifications(runner, use_registry, connection):
    connection.pending.extend([Notify("jobs", '[{"id":1},"urgent"]', 77), Notify("jobs", "late", 77)])

    result = runner.invoke(cli_module.cli, ["listen", "jobs", "--count", "1"])

    assert result.exit_code == 0, result.output
    assert connection.statements == ['LISTEN "jobs"']
    assert _json_lines(result.stdout) == [{"channel": "jobs", "pid": 77, "args": [{"id": 1}, "urgent"]}]
