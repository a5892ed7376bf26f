"""Shared fixtures for the client test-suite."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

import pytest

from steadydb.config import ClientConfig
from steadydb.drivers import DbapiConnection, DbapiConnector


class CountingConnector:
    """Wrap a connector and record how often it is asked for a connection."""

    def __init__(self, inner: Any) -> None:
        self._inner = inner
        self.opened: list[DbapiConnection] = []
        self.fresh_flags: list[bool] = []

    def __call__(self, config: ClientConfig, *, fresh: bool = False) -> DbapiConnection:
        connection = self._inner(config, fresh=fresh)
        self.opened.append(connection)
        self.fresh_flags.append(fresh)
        return connection


@pytest.fixture
def database_path(tmp_path: Path) -> Path:
    path = tmp_path / "app.db"
    raw = sqlite3.connect(path)
    raw.execute("CREATE TABLE accounts (id INTEGER PRIMARY KEY, email TEXT UNIQUE, status TEXT)")
    raw.execute("INSERT INTO accounts (email, status) VALUES ('anna@example.com', 'active')")
    raw.execute("INSERT INTO accounts (email, status) VALUES ('ben@example.com', 'inactive')")
    raw.commit()
    raw.close()
    return path


@pytest.fixture
def sqlite_connector(database_path: Path) -> CountingConnector:
    return CountingConnector(DbapiConnector(lambda _config: sqlite3.connect(database_path)))


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(database="app", lazy=True, persistent=False)
