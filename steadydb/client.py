"""Resilient database client exposing row, write and quoting operations."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from .config import ClientConfig, load_config
from .connections import ConfigError, Connection, ConnectionManager, Connector, Params, Statement
from .drivers import open_connection
from .models import SUCCESS, TRANSIENT_SQLSTATE, ErrorInfo, FetchMode, ParamType, Row, empty_row, merge_error_info
from .proxy import MAX_RECONNECT_ATTEMPTS, Capability, CommandProxy, Outcome

LOG = logging.getLogger(__name__)

_COMMIT_ACTIONS = frozenset({"C", "COMMIT"})
_ROLLBACK_ACTIONS = frozenset({"R", "ROLLBACK"})


class Client:
    """Single-connection database client with lazy connect and transparent retries.

    Every operation resets the client's error tuple on entry and reports
    failures through :meth:`current_error` rather than by raising. Only
    connection establishment at construction time, on the first lazy use and
    on :meth:`reconnect` raises :class:`~steadydb.connections.ConfigError`.

    A client owns exactly one connection and is not safe to share between
    threads without external locking.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        connector: Connector | None = None,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        self._config = config
        self._manager = ConnectionManager(config, connector or open_connection)
        self._proxy = CommandProxy(self._manager, max_attempts=max_attempts, backoff=config.retry_backoff)
        self._error: ErrorInfo = SUCCESS
        if not config.lazy:
            try:
                self._manager.connect()
            except ConfigError as exc:
                self._error = ErrorInfo("", None, str(exc))
                raise

    @classmethod
    def from_profile(cls, name: str | None = None, *, connector: Connector | None = None) -> Client:
        """Build a client from a profile in the user's config file."""

        return cls(load_config().profile(name), connector=connector)

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def connected(self) -> bool:
        return self._manager.connected

    # ------------------------------------------------------------------
    # Reads

    def get_row(self, sql: str, fetch_mode: FetchMode = FetchMode.BOTH) -> Row:
        """Return the first row of ``sql``, or an empty row."""

        self._reset()
        statement = self._run_query(sql)
        if statement is None or not statement.column_count():
            return empty_row(fetch_mode)
        row = statement.fetch(fetch_mode)
        self._error = merge_error_info(self._error, statement.error_info())
        return row if row is not None else empty_row(fetch_mode)

    def get_rows(self, sql: str, fetch_mode: FetchMode = FetchMode.BOTH) -> list[Row]:
        """Return every row of ``sql``; an empty list when there are none."""

        self._reset()
        statement = self._run_query(sql)
        if statement is None or not statement.column_count():
            return []
        rows = statement.fetch_all(fetch_mode)
        self._error = merge_error_info(self._error, statement.error_info())
        return rows

    # ------------------------------------------------------------------
    # Writes

    def insert(self, sql: str) -> str:
        """Execute an insert and return the generated identifier ('' on failure)."""

        self._reset()
        statement = self._run_query(sql)
        if statement is None or not self._error.ok:
            return ""
        # Read from the connection that ran the insert; a retry could swap it.
        connection = self._live_connection()
        if connection is None:
            return ""
        identifier = connection.last_insert_id()
        self._error = connection.error_info()
        return identifier

    def update(self, sql: str) -> int:
        """Execute ``sql`` directly; returns affected rows or ``-1`` on failure."""

        self._reset()
        affected, self._error = self._proxy.invoke(Capability.EXEC, sql)
        if affected is None:
            return -1
        return int(affected)

    delete = update

    def execute_prepared(self, sql: str, params: Params) -> Statement | None:
        """Prepare ``sql`` and execute it with ``params``.

        Returns ``None`` when preparation fails. A statement that failed to
        execute is still returned; its error is reported by
        :meth:`current_error`.
        """

        self._reset()

        def _prepare_and_execute(connection: Connection) -> Outcome:
            statement = connection.prepare(sql)
            if statement is None:
                return None, connection.error_info()
            statement.execute(params)
            return statement, merge_error_info(connection.error_info(), statement.error_info())

        # Prepare and execute form one retried unit.
        statement, self._error = self._proxy.run("execute_prepared", _prepare_and_execute)
        return statement

    def execute(self, sql: str, params: Params = None) -> Statement | None:
        """Run ``sql`` directly, or prepared when ``params`` are given."""

        if params:
            return self.execute_prepared(sql, params)
        self._reset()
        return self._run_query(sql)

    def last_insert_id(self, name: str | None = None) -> str:
        self._reset()
        identifier, self._error = self._proxy.invoke(Capability.LAST_INSERT_ID, name)
        return identifier or ""

    def transaction(self, action: str = "BEGIN") -> bool:
        """Begin, commit (``C``/``COMMIT``) or roll back (``R``/``ROLLBACK``)."""

        self._reset()
        verb = action.strip().upper()
        if verb in _COMMIT_ACTIONS or verb in _ROLLBACK_ACTIONS:
            # A reconnect would drop the transaction, so these bypass the retry loop.
            connection = self._live_connection()
            if connection is None:
                return False
            result = connection.commit() if verb in _COMMIT_ACTIONS else connection.rollback()
            self._error = connection.error_info()
            return bool(result)
        result, self._error = self._proxy.invoke(Capability.BEGIN)
        return bool(result)

    # ------------------------------------------------------------------
    # Quoting

    def quote(self, value: Any, param_type: ParamType = ParamType.STR) -> str:
        """Quote ``value`` for interpolation into SQL.

        ``None`` becomes ``NULL``. Sequences are quoted element-wise and joined
        with ``", "`` for use inside ``IN (...)``.
        """

        self._reset()
        connection = self._live_connection()
        if connection is None:
            return ""
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
            return ", ".join(self._quote_one(connection, item, param_type) for item in value)
        return self._quote_one(connection, value, param_type)

    # ------------------------------------------------------------------
    # Errors and lifecycle

    def current_error(self) -> ErrorInfo:
        """Error tuple of the most recent operation.

        When the stored tuple carries no driver details the live connection is
        asked directly, which covers failures only visible at that level.
        """

        connection = self._manager.connection
        if self._error.has_details or connection is None:
            return self._error
        live = connection.error_info()
        return live if live.has_details else self._error

    def reconnect(self) -> None:
        """Discard the current connection and open a new one."""

        self._reset()
        self._manager.connect(force=True)

    def close(self) -> None:
        self._manager.close()

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers

    def _reset(self) -> None:
        self._error = SUCCESS

    def _run_query(self, sql: str) -> Statement | None:
        statement, self._error = self._proxy.invoke(Capability.QUERY, sql)
        if statement is not None:
            self._error = merge_error_info(self._error, statement.error_info())
        return statement

    def _live_connection(self) -> Connection | None:
        """Current connection, opened on demand.

        Only a lazy client's first connect raises. Later connect failures are
        recorded as a transient error and ``None`` is returned.
        """

        if not self._manager.established:
            return self._manager.connect()
        try:
            return self._manager.connect()
        except ConfigError as exc:
            self._error = ErrorInfo(TRANSIENT_SQLSTATE, None, str(exc))
            return None

    def _quote_one(self, connection: Connection, value: Any, param_type: ParamType) -> str:
        if value is None:
            return "NULL"
        quoted = connection.quote(value, param_type)
        error = connection.error_info()
        if not error.ok:
            self._error = error
            LOG.debug("Failed to quote value", extra={"sqlstate": error.sqlstate})
        return quoted if quoted is not None else ""


__all__ = ["Client"]
