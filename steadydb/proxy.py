"""Capability forwarding with transparent reconnect-and-retry."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable

from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_fixed, wait_none

from .connections import ConfigError, Connection, ConnectionManager
from .models import SUCCESS, TRANSIENT_SQLSTATE, UNSUPPORTED_SQLSTATE, ErrorInfo

LOG = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 10

Outcome = tuple[Any, ErrorInfo]
Action = Callable[[Connection], Outcome]


class Capability(str, Enum):
    """Connection operations the proxy is allowed to forward."""

    QUERY = "query"
    PREPARE = "prepare"
    EXEC = "exec"
    QUOTE = "quote"
    LAST_INSERT_ID = "last_insert_id"
    BEGIN = "begin"
    COMMIT = "commit"
    ROLLBACK = "rollback"


def _is_transient(outcome: Outcome) -> bool:
    return outcome[1].is_transient


class CommandProxy:
    """Forward capability calls to the managed connection.

    A call whose error tuple carries the transient status forces a reconnect
    and is repeated with the same arguments, up to ``max_attempts`` reconnects.
    When the budget runs out the last result and error are returned as-is.

    Only the very first connect of a manager may raise. Once a connection was
    established, failing to reopen it is reported as a transient outcome and
    spends the retry budget like any other transient error.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        backoff: float = 0.0,
    ) -> None:
        self._manager = manager
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._reconnect_error: str | None = None

    def invoke(self, operation: Capability | str, *args: Any) -> Outcome:
        """Run ``operation`` on the connection, reconnecting on transient failures."""

        try:
            capability = Capability(operation)
        except ValueError:
            return self._unsupported(operation)

        def _call(connection: Connection) -> Outcome:
            method = getattr(connection, capability.value, None)
            if method is None:
                return self._unsupported(capability)
            return method(*args), connection.error_info()

        return self.run(capability.value, _call)

    def run(self, label: str, action: Action) -> Outcome:
        """Run ``action`` against the live connection under the retry policy.

        ``action`` must return ``(result, error)``; it is called again on a
        freshly opened connection whenever ``error`` is transient.
        """

        self._reconnect_error = None
        try:
            self._manager.connect()
        except ConfigError as exc:
            if not self._manager.established:
                raise
            self._reconnect_error = str(exc)
            LOG.warning("Reconnect failed", extra={"operation": label, "error": str(exc)})

        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts + 1),
            wait=wait_fixed(self._backoff) if self._backoff > 0 else wait_none(),
            retry=retry_if_result(_is_transient),
            before_sleep=self._reconnect,
            retry_error_callback=self._give_up,
        )
        return retrying(self._attempt, label, action)

    def _attempt(self, label: str, action: Action) -> Outcome:
        connection = self._manager.connection
        if connection is None:
            return None, ErrorInfo(TRANSIENT_SQLSTATE, None, self._reconnect_error or "No database connection.")
        return action(connection)

    def _reconnect(self, retry_state: RetryCallState) -> None:
        label = retry_state.args[0]
        error = retry_state.outcome.result()[1] if retry_state.outcome else SUCCESS
        LOG.warning(
            "Transient database error, reconnecting",
            extra={
                "operation": label,
                "attempt": retry_state.attempt_number,
                "sqlstate": error.sqlstate,
                "driver_message": error.driver_message,
            },
        )
        try:
            self._manager.connect(force=True)
        except ConfigError as exc:
            self._reconnect_error = str(exc)
            LOG.warning("Reconnect failed", extra={"operation": label, "error": str(exc)})
        else:
            self._reconnect_error = None

    @staticmethod
    def _give_up(retry_state: RetryCallState) -> Outcome:
        outcome: Outcome = retry_state.outcome.result()
        LOG.error(
            "Giving up after repeated transient errors",
            extra={
                "operation": retry_state.args[0],
                "attempts": retry_state.attempt_number,
                "sqlstate": outcome[1].sqlstate,
            },
        )
        return outcome

    @staticmethod
    def _unsupported(operation: Capability | str) -> Outcome:
        name = operation.value if isinstance(operation, Capability) else str(operation)
        LOG.error("Unsupported connection capability", extra={"operation": name})
        return None, ErrorInfo(UNSUPPORTED_SQLSTATE, None, f"Driver does not support this function: {name}")


__all__ = ["MAX_RECONNECT_ATTEMPTS", "Action", "Capability", "CommandProxy", "Outcome"]
