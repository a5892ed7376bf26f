"""Shared value types used across the connection, proxy and client modules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Sequence

SUCCESS_SQLSTATE = "00000"
TRANSIENT_SQLSTATE = "HY000"
UNSUPPORTED_SQLSTATE = "IM001"
TRANSACTION_STATE_SQLSTATE = "25000"

Row = Mapping[Any, Any] | tuple[Any, ...]


class FetchMode(str, Enum):
    """Shape of the rows returned by fetch operations."""

    ASSOC = "assoc"
    NUM = "num"
    BOTH = "both"


class ParamType(str, Enum):
    """Hint describing how a value should be rendered as an SQL literal."""

    STR = "str"
    INT = "int"
    BOOL = "bool"
    NULL = "null"
    LOB = "lob"


class ErrorClass(str, Enum):
    """Coarse classification of an error tuple."""

    SUCCESS = "success"
    TRANSIENT = "transient"
    QUERY = "query"


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Normalized (status, driver code, driver message) error tuple."""

    sqlstate: str = SUCCESS_SQLSTATE
    driver_code: int | None = None
    driver_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.sqlstate == SUCCESS_SQLSTATE

    @property
    def is_transient(self) -> bool:
        """True for the generic status class that triggers a reconnect."""

        return self.sqlstate == TRANSIENT_SQLSTATE

    @property
    def has_details(self) -> bool:
        return self.driver_code is not None or bool(self.driver_message)

    @property
    def error_class(self) -> ErrorClass:
        if self.ok:
            return ErrorClass.SUCCESS
        if self.is_transient:
            return ErrorClass.TRANSIENT
        return ErrorClass.QUERY

    def as_tuple(self) -> tuple[str, int | None, str | None]:
        return (self.sqlstate, self.driver_code, self.driver_message)


SUCCESS = ErrorInfo()


def merge_error_info(connection: ErrorInfo, statement: ErrorInfo | None) -> ErrorInfo:
    """Combine connection and statement level errors into one tuple.

    The statement tuple takes precedence whenever a statement exists and its
    status is populated; statements report the more specific failure (for
    example a constraint violation) than the shared connection does. In every
    other case the connection tuple is returned unchanged.
    """

    if statement is not None and statement.sqlstate:
        return statement
    return connection


def empty_row(mode: FetchMode) -> Row:
    """Sentinel returned when a fetch yields nothing."""

    if mode is FetchMode.NUM:
        return ()
    return {}


def shape_row(columns: Sequence[str], values: Sequence[Any], mode: FetchMode) -> Row:
    """Render raw column values according to ``mode``."""

    if mode is FetchMode.NUM:
        return tuple(values)
    if mode is FetchMode.ASSOC:
        return dict(zip(columns, values))
    row: dict[Any, Any] = {}
    for index, (column, value) in enumerate(zip(columns, values)):
        row[column] = value
        row[index] = value
    return row


__all__ = [
    "SUCCESS",
    "SUCCESS_SQLSTATE",
    "TRANSACTION_STATE_SQLSTATE",
    "TRANSIENT_SQLSTATE",
    "UNSUPPORTED_SQLSTATE",
    "ErrorClass",
    "ErrorInfo",
    "FetchMode",
    "ParamType",
    "Row",
    "empty_row",
    "merge_error_info",
    "shape_row",
]
