"""Transport implementations of the connection capability set."""

from __future__ import annotations

import asyncio
import importlib
import logging
import threading
from typing import Any, Callable, Coroutine, Mapping, TypeVar

import asyncpg

from .config import ClientConfig
from .connections import ConfigError, Connection, Params, quote_literal
from .models import (
    SUCCESS,
    TRANSACTION_STATE_SQLSTATE,
    TRANSIENT_SQLSTATE,
    ErrorInfo,
    FetchMode,
    ParamType,
    Row,
    shape_row,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

NO_TRANSACTION = ErrorInfo(TRANSACTION_STATE_SQLSTATE, None, "There is no active transaction")
ALREADY_IN_TRANSACTION = ErrorInfo(TRANSACTION_STATE_SQLSTATE, None, "There is already an active transaction")


def _row_count_from_status(status: str | None) -> int:
    """Parse the trailing count from a PostgreSQL command tag like ``DELETE 3``."""

    if not status:
        return 0
    tail = status.rsplit(None, 1)[-1]
    return int(tail) if tail.isdigit() else 0


# ----------------------------------------------------------------------
# asyncpg


class _EventLoopThread:
    """Background event loop that runs asyncpg coroutines for blocking callers."""

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever,
            name="steadydb-asyncpg-loop",
            daemon=True,
        )
        self._thread.start()

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()


_RUNNER: _EventLoopThread | None = None
_RUNNER_LOCK = threading.Lock()

# Idle persistent handles; a handle is only ever leased to one client at a time.
_PERSISTENT: dict[tuple[str, int, str, str, str], list[Any]] = {}
_PERSISTENT_LOCK = threading.Lock()

# Connection exceptions and operator-initiated shutdowns both mean the session is gone.
_CONNECTION_LOST_PREFIXES = ("08", "57P0")


def _runner() -> _EventLoopThread:
    global _RUNNER
    with _RUNNER_LOCK:
        if _RUNNER is None:
            _RUNNER = _EventLoopThread()
        return _RUNNER


def _persistent_key(config: ClientConfig) -> tuple[str, int, str, str, str]:
    return (config.host, config.port, config.database, config.username, config.charset)


def _lease_persistent(key: tuple[str, int, str, str, str]) -> Any | None:
    with _PERSISTENT_LOCK:
        idle = _PERSISTENT.get(key, [])
        while idle:
            raw = idle.pop()
            if not raw.is_closed():
                return raw
    return None


def _return_persistent(key: tuple[str, int, str, str, str], raw: Any) -> None:
    with _PERSISTENT_LOCK:
        _PERSISTENT.setdefault(key, []).append(raw)


def release_persistent_connections() -> None:
    """Close every idle persistent asyncpg handle (shutdown helper)."""

    with _PERSISTENT_LOCK:
        handles = [raw for idle in _PERSISTENT.values() for raw in idle]
        _PERSISTENT.clear()
    for raw in handles:
        try:
            _runner().run(raw.close())
        except Exception:  # pragma: no cover - best effort cleanup
            LOG.exception("Failed to close persistent connection")


def asyncpg_error(exc: BaseException) -> ErrorInfo:
    """Normalize an asyncpg failure into an error tuple.

    Server errors keep their SQLSTATE. Lost sessions and anything the server
    did not classify collapse into the transient status.
    """

    message = str(exc) or type(exc).__name__
    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(exc, asyncpg.PostgresError) and sqlstate and not sqlstate.startswith(_CONNECTION_LOST_PREFIXES):
        return ErrorInfo(sqlstate, None, message)
    return ErrorInfo(TRANSIENT_SQLSTATE, None, message)


class AsyncpgStatement:
    """Prepared asyncpg statement with buffered results."""

    def __init__(self, owner: AsyncpgConnection, prepared: Any) -> None:
        self._owner = owner
        self._prepared = prepared
        self._columns = tuple(str(attribute.name) for attribute in prepared.get_attributes())
        self._records: list[Any] = []
        self._cursor = 0
        self._status: str | None = None
        self._error: ErrorInfo = SUCCESS

    def execute(self, params: Params = None) -> bool:
        if isinstance(params, Mapping):
            self._error = ErrorInfo("HY093", None, "Named parameters are not supported by asyncpg")
            return False
        try:
            self._records = self._owner.run(self._fetch(tuple(params or ())))
        except Exception as exc:
            self._error = self._owner.record_failure(exc)
            return False
        self._cursor = 0
        self._error = SUCCESS
        return True

    def fetch(self, mode: FetchMode = FetchMode.BOTH) -> Row | None:
        if self._cursor >= len(self._records):
            return None
        record = self._records[self._cursor]
        self._cursor += 1
        return self._shape(record, mode)

    def fetch_all(self, mode: FetchMode = FetchMode.BOTH) -> list[Row]:
        remaining = self._records[self._cursor :]
        self._cursor = len(self._records)
        return [self._shape(record, mode) for record in remaining]

    def row_count(self) -> int:
        return _row_count_from_status(self._status)

    def column_count(self) -> int:
        return len(self._columns)

    def error_info(self) -> ErrorInfo:
        return self._error

    def close(self) -> None:
        self._records = []
        self._cursor = 0

    async def _fetch(self, params: tuple[Any, ...]) -> list[Any]:
        records = await self._prepared.fetch(*params)
        self._status = self._prepared.get_statusmsg()
        return list(records)

    def _shape(self, record: Any, mode: FetchMode) -> Row:
        return shape_row(self._columns, tuple(record[column] for column in self._columns), mode)


class AsyncpgConnection:
    """PostgreSQL transport backed by asyncpg on a background event loop.

    With ``persistent`` configs a closed connection hands its session back to
    a process-wide idle pool instead of closing it, and the next client opening
    the same configuration leases it. A session is held by at most one client
    at a time, so clients never share transaction state. Sessions that saw a
    connection-loss error or still hold an open transaction are closed for real.
    """

    def __init__(self, raw: Any, config: ClientConfig) -> None:
        self._raw = raw
        self._config = config
        self._transaction: Any | None = None
        self._error: ErrorInfo = SUCCESS
        self._lost = False
        self._closed = False

    @classmethod
    def open(cls, config: ClientConfig, *, fresh: bool = False) -> AsyncpgConnection:
        """Open a connection, leasing an idle persistent session when allowed.

        ``fresh`` always opens a new session; it is used for forced reconnects.
        """

        if config.persistent and not fresh:
            cached = _lease_persistent(_persistent_key(config))
            if cached is not None:
                LOG.debug("Reusing persistent connection", extra={"host": config.host, "database": config.database})
                return cls(cached, config)
        return cls(_runner().run(cls._connect(config)), config)

    @staticmethod
    async def _connect(config: ClientConfig) -> Any:
        try:
            return await asyncpg.connect(
                host=config.host,
                port=config.port,
                user=config.username,
                password=config.password or None,
                database=config.database,
                timeout=config.connect_timeout,
                server_settings={"client_encoding": config.charset},
            )
        except Exception as exc:
            raise ConfigError(f"Failed to connect to '{config.database}' on {config.host}: {exc}") from exc

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        return _runner().run(coro)

    def query(self, sql: str) -> AsyncpgStatement | None:
        statement = self.prepare(sql)
        if statement is None:
            return None
        if not statement.execute():
            self._error = statement.error_info()
            return None
        return statement

    def prepare(self, sql: str) -> AsyncpgStatement | None:
        try:
            prepared = self.run(self._raw.prepare(sql))
        except Exception as exc:
            self._error = self.record_failure(exc)
            return None
        self._error = SUCCESS
        return AsyncpgStatement(self, prepared)

    def exec(self, sql: str) -> int | None:
        try:
            status = self.run(self._raw.execute(sql))
        except Exception as exc:
            self._error = self.record_failure(exc)
            return None
        self._error = SUCCESS
        return _row_count_from_status(status)

    def quote(self, value: Any, param_type: ParamType = ParamType.STR) -> str | None:
        try:
            quoted = quote_literal(value, param_type)
        except (TypeError, ValueError) as exc:
            self._error = ErrorInfo("22018", None, str(exc))
            return None
        self._error = SUCCESS
        return quoted

    def last_insert_id(self, name: str | None = None) -> str:
        try:
            if name is None:
                value = self.run(self._raw.fetchval("SELECT lastval()"))
            else:
                value = self.run(self._raw.fetchval("SELECT currval($1::regclass)", name))
        except Exception as exc:
            self._error = self.record_failure(exc)
            return ""
        self._error = SUCCESS
        return "" if value is None else str(value)

    def begin(self) -> bool:
        if self._transaction is not None:
            self._error = ALREADY_IN_TRANSACTION
            return False
        transaction = self._raw.transaction()
        if not self._call(transaction.start()):
            return False
        self._transaction = transaction
        return True

    def commit(self) -> bool:
        return self._finish("commit")

    def rollback(self) -> bool:
        return self._finish("rollback")

    def error_info(self) -> ErrorInfo:
        return self._error

    def close(self) -> None:
        if self._closed or self._raw.is_closed():
            self._closed = True
            return
        self._closed = True
        if self._config.persistent and not self._lost and self._transaction is None:
            _return_persistent(_persistent_key(self._config), self._raw)
            return
        self.run(self._raw.close())

    def record_failure(self, exc: BaseException) -> ErrorInfo:
        """Normalize ``exc`` and remember whether the session was lost."""

        error = asyncpg_error(exc)
        if error.is_transient:
            self._lost = True
        return error

    def _finish(self, action: str) -> bool:
        transaction, self._transaction = self._transaction, None
        if transaction is None:
            self._error = NO_TRANSACTION
            return False
        return self._call(getattr(transaction, action)())

    def _call(self, coro: Coroutine[Any, Any, Any]) -> bool:
        try:
            self.run(coro)
        except Exception as exc:
            self._error = self.record_failure(exc)
            return False
        self._error = SUCCESS
        return True


# ----------------------------------------------------------------------
# DB-API 2.0

_DBAPI_SQLSTATES: Mapping[str, str] = {
    "IntegrityError": "23000",
    "ProgrammingError": "42000",
    "DataError": "22000",
    "NotSupportedError": "IM001",
}


# MySQL client/server codes for a session that is gone or cannot be reached.
_CONNECTION_LOST_CODES = frozenset({1053, 1927, 2002, 2003, 2006, 2013, 2055, 4031})

_CONNECTION_LOST_MESSAGES = (
    "gone away",
    "lost connection",
    "can't connect",
    "could not connect",
    "connection refused",
    "connection reset",
    "connection timed out",
    "server closed the connection",
    "connection is closed",
    "closed database",
    "broken pipe",
    "network is unreachable",
    "no route to host",
)

_MISSING_TABLE_CODES = frozenset({1146})


def _is_connection_lost(exc: BaseException, code: int | None, message: str) -> bool:
    if code in _CONNECTION_LOST_CODES:
        return True
    if isinstance(exc, OSError):
        return True
    if any(klass.__name__ == "InterfaceError" for klass in type(exc).__mro__):
        return True
    lowered = message.lower()
    return any(marker in lowered for marker in _CONNECTION_LOST_MESSAGES)


def dbapi_error(exc: BaseException) -> ErrorInfo:
    """Map a PEP 249 exception onto an error tuple.

    Only a lost or unreachable session maps to the transient status. Other
    failures keep a class-derived status: ``IntegrityError`` and friends by
    name, missing tables as ``42S02`` and anything else (``OperationalError``
    included, which drivers raise for syntax errors) as ``42000``.
    """

    code: int | None = None
    message = str(exc) or type(exc).__name__
    if len(exc.args) >= 2 and isinstance(exc.args[0], int):
        code, message = exc.args[0], str(exc.args[1])
    if _is_connection_lost(exc, code, message):
        return ErrorInfo(TRANSIENT_SQLSTATE, code, message)
    for klass in type(exc).__mro__:
        if klass.__name__ in _DBAPI_SQLSTATES:
            return ErrorInfo(_DBAPI_SQLSTATES[klass.__name__], code, message)
    if code in _MISSING_TABLE_CODES or "no such table" in message.lower():
        return ErrorInfo("42S02", code, message)
    return ErrorInfo("42000", code, message)


class DbapiStatement:
    """Statement wrapper over a DB-API cursor."""

    def __init__(self, owner: DbapiConnection, sql: str) -> None:
        self._owner = owner
        self._sql = sql
        self._cursor: Any | None = None
        self._error: ErrorInfo = SUCCESS

    def execute(self, params: Params = None) -> bool:
        cursor = None
        try:
            cursor = self._owner.raw.cursor()
            if params is None:
                cursor.execute(self._sql)
            else:
                cursor.execute(self._sql, params)
            self._owner.statement_executed(cursor)
        except Exception as exc:
            self._error = dbapi_error(exc)
            if cursor is not None:
                cursor.close()
            return False
        self.close()
        self._cursor = cursor
        self._error = SUCCESS
        return True

    def fetch(self, mode: FetchMode = FetchMode.BOTH) -> Row | None:
        if not self.column_count():
            return None
        try:
            values = self._cursor.fetchone()
        except Exception as exc:
            self._error = dbapi_error(exc)
            return None
        return None if values is None else shape_row(self._columns(), values, mode)

    def fetch_all(self, mode: FetchMode = FetchMode.BOTH) -> list[Row]:
        if not self.column_count():
            return []
        try:
            rows = self._cursor.fetchall()
        except Exception as exc:
            self._error = dbapi_error(exc)
            return []
        columns = self._columns()
        return [shape_row(columns, values, mode) for values in rows]

    def row_count(self) -> int:
        if self._cursor is None:
            return 0
        return max(int(self._cursor.rowcount), 0)

    def column_count(self) -> int:
        if self._cursor is None:
            return 0
        return len(self._cursor.description or ())

    def error_info(self) -> ErrorInfo:
        return self._error

    def close(self) -> None:
        cursor, self._cursor = self._cursor, None
        if cursor is not None:
            cursor.close()

    def _columns(self) -> tuple[str, ...]:
        return tuple(str(column[0]) for column in self._cursor.description)


class DbapiConnection:
    """Transport over any PEP 249 connection.

    Writes are committed immediately unless an explicit transaction was
    started with :meth:`begin`.
    """

    def __init__(self, raw: Any, *, backslash_escapes: bool = False) -> None:
        self.raw = raw
        self._backslash_escapes = backslash_escapes
        self._in_transaction = False
        self._last_row_id: Any | None = None
        self._error: ErrorInfo = SUCCESS

    def query(self, sql: str) -> DbapiStatement | None:
        statement = DbapiStatement(self, sql)
        if not statement.execute():
            self._error = statement.error_info()
            return None
        self._error = SUCCESS
        return statement

    def prepare(self, sql: str) -> DbapiStatement | None:
        # PEP 249 has no separate prepare step; binding happens on execute.
        self._error = SUCCESS
        return DbapiStatement(self, sql)

    def exec(self, sql: str) -> int | None:
        statement = DbapiStatement(self, sql)
        if not statement.execute():
            self._error = statement.error_info()
            return None
        self._error = SUCCESS
        count = statement.row_count()
        statement.close()
        return count

    def quote(self, value: Any, param_type: ParamType = ParamType.STR) -> str | None:
        try:
            quoted = quote_literal(value, param_type, backslash_escapes=self._backslash_escapes)
        except (TypeError, ValueError) as exc:
            self._error = ErrorInfo("22018", None, str(exc))
            return None
        self._error = SUCCESS
        return quoted

    def last_insert_id(self, name: str | None = None) -> str:
        self._error = SUCCESS
        return "" if self._last_row_id is None else str(self._last_row_id)

    def begin(self) -> bool:
        if self._in_transaction:
            self._error = ALREADY_IN_TRANSACTION
            return False
        self._in_transaction = True
        self._error = SUCCESS
        return True

    def commit(self) -> bool:
        return self._finish(self.raw.commit)

    def rollback(self) -> bool:
        return self._finish(self.raw.rollback)

    def error_info(self) -> ErrorInfo:
        return self._error

    def close(self) -> None:
        self.raw.close()

    def statement_executed(self, cursor: Any) -> None:
        """Record the cursor's generated id and commit outside transactions."""

        row_id = getattr(cursor, "lastrowid", None)
        if row_id:
            self._last_row_id = row_id
        if not self._in_transaction:
            self.raw.commit()

    def _finish(self, action: Callable[[], None]) -> bool:
        if not self._in_transaction:
            self._error = NO_TRANSACTION
            return False
        self._in_transaction = False
        try:
            action()
        except Exception as exc:
            self._error = dbapi_error(exc)
            return False
        self._error = SUCCESS
        return True


class DbapiConnector:
    """Connector that opens :class:`DbapiConnection` handles from a factory.

    ``factory`` receives the client configuration and returns a raw PEP 249
    connection.
    """

    def __init__(self, factory: Callable[[ClientConfig], Any], *, backslash_escapes: bool = False) -> None:
        self._factory = factory
        self._backslash_escapes = backslash_escapes

    @classmethod
    def from_module(cls, module_name: str) -> DbapiConnector:
        """Build a connector for a driver module exposing ``connect(host=..., ...)``."""

        try:
            module = importlib.import_module(module_name)
        except ImportError as exc:
            raise ConfigError(f"Unknown database driver '{module_name}'") from exc

        def _factory(config: ClientConfig) -> Any:
            return module.connect(
                host=config.host,
                port=config.port,
                user=config.username,
                password=config.password,
                database=config.database,
                charset=config.charset.lower().replace("-", ""),
                connect_timeout=config.connect_timeout,
            )

        # MySQL drivers run with backslash escapes enabled by default.
        return cls(_factory, backslash_escapes="mysql" in module_name.lower())

    def __call__(self, config: ClientConfig, *, fresh: bool = False) -> DbapiConnection:
        try:
            raw = self._factory(config)
        except Exception as exc:
            raise ConfigError(f"Failed to connect to '{config.database}' on {config.host}: {exc}") from exc
        return DbapiConnection(raw, backslash_escapes=self._backslash_escapes)


def open_connection(config: ClientConfig, *, fresh: bool = False) -> Connection:
    """Default connector dispatching on ``config.driver``."""

    if config.driver == "asyncpg":
        return AsyncpgConnection.open(config, fresh=fresh)
    return DbapiConnector.from_module(config.driver)(config, fresh=fresh)


__all__ = [
    "AsyncpgConnection",
    "AsyncpgStatement",
    "DbapiConnection",
    "DbapiConnector",
    "DbapiStatement",
    "asyncpg_error",
    "dbapi_error",
    "open_connection",
    "release_persistent_connections",
]
