"""Tests for the asyncpg and DB-API transports."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import asyncpg
import pytest

from steadydb import drivers
from steadydb.config import ClientConfig
from steadydb.connections import ConfigError
from steadydb.drivers import (
    AsyncpgConnection,
    DbapiConnection,
    DbapiConnector,
    asyncpg_error,
    dbapi_error,
    open_connection,
    release_persistent_connections,
)
from steadydb.models import FetchMode, ParamType


@pytest.fixture
def dbapi(database_path: Path) -> Iterator[DbapiConnection]:
    connection = DbapiConnection(sqlite3.connect(database_path))
    yield connection
    connection.close()


def test_dbapi_query_returns_executed_statement(dbapi: DbapiConnection) -> None:
    statement = dbapi.query("SELECT id, email FROM accounts ORDER BY id")

    assert statement is not None
    assert statement.column_count() == 2
    assert statement.fetch(FetchMode.ASSOC) == {"id": 1, "email": "anna@example.com"}
    assert statement.fetch_all(FetchMode.NUM) == [(2, "ben@example.com")]
    assert dbapi.error_info().ok


def test_dbapi_query_failure_is_recorded_on_connection(dbapi: DbapiConnection) -> None:
    assert dbapi.query("SELECT * FROM missing_table") is None

    error = dbapi.error_info()
    assert error.sqlstate == "42S02"
    assert "missing_table" in (error.driver_message or "")


def test_dbapi_exec_returns_row_count_and_commits(dbapi: DbapiConnection, database_path: Path) -> None:
    assert dbapi.exec("UPDATE accounts SET status = 'archived'") == 2
    assert dbapi.exec("DELETE FROM accounts WHERE 1 = 0") == 0

    with sqlite3.connect(database_path) as other:
        statuses = {row[0] for row in other.execute("SELECT status FROM accounts")}
    assert statuses == {"archived"}


def test_dbapi_integrity_errors_keep_their_class(dbapi: DbapiConnection) -> None:
    assert dbapi.exec("INSERT INTO accounts (email) VALUES ('anna@example.com')") is None

    assert dbapi.error_info().sqlstate == "23000"


def test_dbapi_prepared_statement_binds_parameters(dbapi: DbapiConnection) -> None:
    statement = dbapi.prepare("SELECT email FROM accounts WHERE status = ?")
    assert statement is not None

    assert statement.execute(("inactive",)) is True
    assert statement.fetch_all(FetchMode.NUM) == [("ben@example.com",)]

    assert statement.execute(("a", "b")) is False
    assert statement.error_info().sqlstate == "42000"


def test_dbapi_last_insert_id_tracks_latest_insert(dbapi: DbapiConnection) -> None:
    assert dbapi.last_insert_id() == ""

    dbapi.query("INSERT INTO accounts (email) VALUES ('cara@example.com')")

    assert dbapi.last_insert_id() == "3"


def test_dbapi_transactions(dbapi: DbapiConnection) -> None:
    assert dbapi.commit() is False
    assert dbapi.error_info().sqlstate == "25000"

    assert dbapi.begin() is True
    assert dbapi.begin() is False
    dbapi.exec("DELETE FROM accounts")
    assert dbapi.rollback() is True

    statement = dbapi.query("SELECT COUNT(*) FROM accounts")
    assert statement is not None and statement.fetch(FetchMode.NUM) == (2,)


def test_dbapi_quote_reports_conversion_errors(dbapi: DbapiConnection) -> None:
    assert dbapi.quote("abc", ParamType.INT) is None
    assert dbapi.error_info().sqlstate == "22018"
    assert dbapi.quote("abc") == "'abc'"
    assert dbapi.error_info().ok


def test_dbapi_error_maps_driver_code() -> None:
    error = dbapi_error(sqlite3.OperationalError(2006, "MySQL server has gone away"))

    assert error.as_tuple() == ("HY000", 2006, "MySQL server has gone away")


@pytest.mark.parametrize(
    ("exc", "sqlstate"),
    [
        (sqlite3.OperationalError(2013, "Lost connection to MySQL server during query"), "HY000"),
        (sqlite3.OperationalError("server closed the connection unexpectedly"), "HY000"),
        (sqlite3.ProgrammingError("Cannot operate on a closed database."), "HY000"),
        (sqlite3.InterfaceError("connection already closed"), "HY000"),
        (ConnectionResetError("reset by peer"), "HY000"),
        (sqlite3.OperationalError(1054, "Unknown column 'nme' in 'field list'"), "42000"),
        (sqlite3.OperationalError('near "SELEC": syntax error'), "42000"),
        (sqlite3.OperationalError(1146, "Table 'app.missing' doesn't exist"), "42S02"),
        (sqlite3.OperationalError("no such table: missing"), "42S02"),
        (sqlite3.IntegrityError("UNIQUE constraint failed: accounts.email"), "23000"),
    ],
)
def test_dbapi_error_only_treats_connection_loss_as_transient(exc: Exception, sqlstate: str) -> None:
    assert dbapi_error(exc).sqlstate == sqlstate


def test_dbapi_connector_wraps_factory_failures() -> None:
    def _factory(config: ClientConfig) -> Any:
        raise sqlite3.OperationalError("unable to open database file")

    connector = DbapiConnector(_factory)

    with pytest.raises(ConfigError, match="unable to open"):
        connector(ClientConfig(database="app"))


def test_open_connection_rejects_unknown_driver() -> None:
    with pytest.raises(ConfigError, match="Unknown database driver"):
        open_connection(ClientConfig(database="app", driver="no_such_driver_module"))


# ----------------------------------------------------------------------
# asyncpg


class _FakeAttribute:
    def __init__(self, name: str) -> None:
        self.name = name


class _FakePrepared:
    def __init__(self, rows: list[dict[str, Any]], status: str) -> None:
        self._rows = rows
        self._status = status
        self.params: tuple[Any, ...] | None = None

    def get_attributes(self) -> tuple[_FakeAttribute, ...]:
        if not self._rows:
            return ()
        return tuple(_FakeAttribute(name) for name in self._rows[0])

    def get_statusmsg(self) -> str:
        return self._status

    async def fetch(self, *params: Any) -> list[dict[str, Any]]:
        self.params = params
        return self._rows


class _FakeTransaction:
    def __init__(self, log: list[str]) -> None:
        self._log = log

    async def start(self) -> None:
        self._log.append("start")

    async def commit(self) -> None:
        self._log.append("commit")

    async def rollback(self) -> None:
        self._log.append("rollback")


class _FakeAsyncpgConnection:
    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = [
            {"id": 1, "email": "anna@example.com"},
            {"id": 2, "email": "ben@example.com"},
        ]
        self.failure: BaseException | None = None
        self.transactions: list[str] = []
        self.closed = False

    async def prepare(self, sql: str) -> _FakePrepared:
        if self.failure is not None:
            raise self.failure
        if sql.lstrip().upper().startswith("SELECT"):
            return _FakePrepared(self.rows, f"SELECT {len(self.rows)}")
        return _FakePrepared([], "INSERT 0 1")

    async def execute(self, sql: str) -> str:
        if self.failure is not None:
            raise self.failure
        return "DELETE 2"

    async def fetchval(self, sql: str, *args: Any) -> int:
        return 7

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(self.transactions)

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_asyncpg(monkeypatch: pytest.MonkeyPatch) -> Iterator[list[dict[str, Any]]]:
    calls: list[dict[str, Any]] = []

    async def _connect(**kwargs: Any) -> _FakeAsyncpgConnection:
        calls.append(kwargs)
        return _FakeAsyncpgConnection()

    monkeypatch.setattr("steadydb.drivers.asyncpg.connect", _connect)
    yield calls
    release_persistent_connections()


def test_asyncpg_connect_uses_configuration(fake_asyncpg: list[dict[str, Any]]) -> None:
    config = ClientConfig(database="app", host="db", port=5432, username="svc", charset="LATIN1", persistent=False)

    AsyncpgConnection.open(config)

    assert fake_asyncpg[0]["host"] == "db"
    assert fake_asyncpg[0]["user"] == "svc"
    assert fake_asyncpg[0]["server_settings"] == {"client_encoding": "LATIN1"}


def test_asyncpg_query_and_exec(fake_asyncpg: list[dict[str, Any]]) -> None:
    connection = AsyncpgConnection.open(ClientConfig(database="app", persistent=False))

    statement = connection.query("SELECT id, email FROM accounts")
    assert statement is not None
    assert statement.column_count() == 2
    assert statement.row_count() == 2
    assert statement.fetch(FetchMode.ASSOC) == {"id": 1, "email": "anna@example.com"}
    assert statement.fetch_all(FetchMode.NUM) == [(2, "ben@example.com")]
    assert connection.exec("DELETE FROM accounts") == 2
    assert connection.last_insert_id() == "7"
    assert connection.error_info().ok


def test_asyncpg_prepared_statement_rejects_named_parameters(fake_asyncpg: list[dict[str, Any]]) -> None:
    connection = AsyncpgConnection.open(ClientConfig(database="app", persistent=False))
    statement = connection.prepare("INSERT INTO accounts (email) VALUES ($1)")
    assert statement is not None

    assert statement.execute(["cara@example.com"]) is True
    assert statement.row_count() == 1
    assert statement.execute({"email": "cara@example.com"}) is False
    assert statement.error_info().sqlstate == "HY093"


def test_asyncpg_transactions(fake_asyncpg: list[dict[str, Any]]) -> None:
    connection = AsyncpgConnection.open(ClientConfig(database="app", persistent=False))

    assert connection.rollback() is False
    assert connection.begin() is True
    assert connection.begin() is False
    assert connection.commit() is True
    assert connection.error_info().ok


def test_asyncpg_connection_loss_normalizes_to_transient(fake_asyncpg: list[dict[str, Any]]) -> None:
    connection = AsyncpgConnection.open(ClientConfig(database="app", persistent=False))
    connection._raw.failure = asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed")

    assert connection.exec("DELETE FROM accounts") is None
    assert connection.error_info().sqlstate == "HY000"


def test_asyncpg_error_mapping() -> None:
    assert asyncpg_error(asyncpg.exceptions.UniqueViolationError("duplicate key")).sqlstate == "23505"
    assert asyncpg_error(asyncpg.exceptions.InterfaceError("connection is closed")).sqlstate == "HY000"
    assert asyncpg_error(ConnectionResetError("reset by peer")).sqlstate == "HY000"


def test_asyncpg_connect_failure_raises_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _broken(**kwargs: Any) -> None:
        raise OSError("Connection refused")

    monkeypatch.setattr("steadydb.drivers.asyncpg.connect", _broken)

    with pytest.raises(ConfigError, match="Connection refused"):
        AsyncpgConnection.open(ClientConfig(database="app", persistent=False))


def test_persistent_sessions_are_reused_after_close(fake_asyncpg: list[dict[str, Any]]) -> None:
    config = ClientConfig(database="app")

    first = AsyncpgConnection.open(config)
    first.close()
    second = AsyncpgConnection.open(config)

    assert len(fake_asyncpg) == 1
    assert second._raw is first._raw
    assert second._raw.closed is False


def test_persistent_sessions_are_never_shared_between_open_clients(fake_asyncpg: list[dict[str, Any]]) -> None:
    config = ClientConfig(database="app")

    first = AsyncpgConnection.open(config)
    second = AsyncpgConnection.open(config)

    assert len(fake_asyncpg) == 2
    assert first._raw is not second._raw
    assert first.begin() is True
    assert second._raw.transactions == []
    assert second.commit() is False


def test_persistent_session_with_open_transaction_is_not_pooled(fake_asyncpg: list[dict[str, Any]]) -> None:
    config = ClientConfig(database="app")
    first = AsyncpgConnection.open(config)
    first.begin()

    first.close()

    assert first._raw.closed is True
    AsyncpgConnection.open(config)
    assert len(fake_asyncpg) == 2


def test_lost_persistent_session_is_closed_and_fresh_open_skips_pool(fake_asyncpg: list[dict[str, Any]]) -> None:
    config = ClientConfig(database="app")
    healthy = AsyncpgConnection.open(config)
    healthy.close()
    broken = AsyncpgConnection.open(config)
    broken._raw.failure = asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed")
    broken.exec("DELETE FROM accounts")

    replacement = AsyncpgConnection.open(config, fresh=True)
    broken.close()

    assert len(fake_asyncpg) == 2
    assert broken._raw.closed is True
    assert replacement._raw is not broken._raw
    assert drivers._PERSISTENT.get(drivers._persistent_key(config), []) == []


def test_release_closes_idle_persistent_sessions(fake_asyncpg: list[dict[str, Any]]) -> None:
    connection = AsyncpgConnection.open(ClientConfig(database="app"))
    connection.close()

    release_persistent_connections()

    assert connection._raw.closed is True
    assert drivers._PERSISTENT == {}
