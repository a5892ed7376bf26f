"""Connection contracts and the manager owning the live connection handle."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .config import ClientConfig
from .models import ErrorInfo, FetchMode, ParamType, Row

LOG = logging.getLogger(__name__)

Params = Sequence[Any] | Mapping[str, Any] | None


class SteadyDBError(RuntimeError):
    """Base class for errors raised by the client."""


class ConfigError(SteadyDBError):
    """Raised when a connection cannot be established from the configuration."""


@runtime_checkable
class Statement(Protocol):
    """Statement handle returned by ``query`` and ``prepare``."""

    def execute(self, params: Params = None) -> bool:
        """Run the statement with bound parameters."""

    def fetch(self, mode: FetchMode = FetchMode.BOTH) -> Row | None:
        """Return the next row, or ``None`` when exhausted."""

    def fetch_all(self, mode: FetchMode = FetchMode.BOTH) -> list[Row]:
        """Return all remaining rows."""

    def row_count(self) -> int:
        """Rows affected by the last execution."""

    def column_count(self) -> int:
        """Number of columns in the result set; zero when there is none."""

    def error_info(self) -> ErrorInfo:
        """Error tuple of the last statement-level call."""

    def close(self) -> None:
        """Release the statement's resources."""


@runtime_checkable
class Connection(Protocol):
    """Capability set every transport exposes.

    Implementations never raise driver exceptions from these methods. A failed
    call returns ``None`` (or ``False``) and records the failure so that
    :meth:`error_info` reports it until the next connection-level call.
    """

    def query(self, sql: str) -> Statement | None:
        """Execute ``sql`` directly and return the executed statement."""

    def prepare(self, sql: str) -> Statement | None:
        """Prepare ``sql`` for later execution."""

    def exec(self, sql: str) -> int | None:
        """Execute ``sql`` directly and return the affected row count."""

    def quote(self, value: Any, param_type: ParamType = ParamType.STR) -> str | None:
        """Render ``value`` as an SQL literal."""

    def last_insert_id(self, name: str | None = None) -> str:
        """Identifier generated by the last insert on this connection."""

    def begin(self) -> bool:
        """Start an explicit transaction."""

    def commit(self) -> bool:
        """Commit the active transaction."""

    def rollback(self) -> bool:
        """Roll back the active transaction."""

    def error_info(self) -> ErrorInfo:
        """Error tuple of the last connection-level call."""

    def close(self) -> None:
        """Close the underlying handle."""


class Connector(Protocol):
    """Factory opening a transport connection for a configuration."""

    def __call__(self, config: ClientConfig, *, fresh: bool = False) -> Connection: ...


class ConnectionManager:
    """Owns the single connection handle of a client."""

    def __init__(self, config: ClientConfig, connector: Connector) -> None:
        self._config = config
        self._connector = connector
        self._connection: Connection | None = None
        self._established = False

    @property
    def connection(self) -> Connection | None:
        return self._connection

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def established(self) -> bool:
        """Whether a connection was ever opened successfully."""

        return self._established

    def connect(self, *, force: bool = False) -> Connection:
        """Return the live connection, opening a new one when absent or forced.

        A forced reconnect registers the replacement before the previous handle
        is closed. If opening fails the previous handle is still released and
        the manager is left without a connection.
        """

        if self._connection is not None and not force:
            return self._connection
        previous, self._connection = self._connection, None
        try:
            self._connection = self._open(fresh=force)
            self._established = True
        finally:
            if previous is not None:
                self._release(previous)
        return self._connection

    def close(self) -> None:
        """Release the current connection, if any."""

        connection, self._connection = self._connection, None
        if connection is not None:
            self._release(connection)

    def _open(self, *, fresh: bool) -> Connection:
        LOG.debug(
            "Opening database connection",
            extra={"host": self._config.host, "database": self._config.database, "fresh": fresh},
        )
        try:
            return self._connector(self._config, fresh=fresh)
        except ConfigError:
            LOG.error(
                "Failed to open database connection",
                extra={"host": self._config.host, "database": self._config.database},
            )
            raise
        except Exception as exc:
            raise ConfigError(
                f"Failed to connect to '{self._config.database}' on {self._config.host}: {exc}"
            ) from exc

    @staticmethod
    def _release(connection: Connection) -> None:
        try:
            connection.close()
        except Exception:  # pragma: no cover - best effort cleanup
            LOG.exception("Failed to close database connection")


def quote_literal(value: Any, param_type: ParamType = ParamType.STR, *, backslash_escapes: bool = False) -> str:
    """Render a scalar as an SQL literal.

    ``backslash_escapes`` doubles backslashes for servers that treat them as
    escape characters inside string literals (MySQL's default mode).
    """

    if value is None or param_type is ParamType.NULL:
        return "NULL"
    if param_type is ParamType.INT:
        return str(int(value))
    if param_type is ParamType.BOOL:
        return "TRUE" if value else "FALSE"
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).decode("utf-8", errors="replace")
    else:
        text = str(value)
    if backslash_escapes:
        text = text.replace("\\", "\\\\").replace("\x00", "\\0")
    return "'" + text.replace("'", "''") + "'"


__all__ = [
    "ConfigError",
    "Connection",
    "ConnectionManager",
    "Connector",
    "Params",
    "SteadyDBError",
    "Statement",
    "quote_literal",
]
