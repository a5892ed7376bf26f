"""Resilient single-connection database client."""

from __future__ import annotations

from .client import Client
from .config import AppConfig, ClientConfig, ConnectionProfileConfig, load_config
from .connections import ConfigError, Connection, ConnectionManager, SteadyDBError, Statement
from .drivers import AsyncpgConnection, DbapiConnection, DbapiConnector, open_connection
from .models import SUCCESS, ErrorClass, ErrorInfo, FetchMode, ParamType, merge_error_info
from .proxy import MAX_RECONNECT_ATTEMPTS, Capability, CommandProxy

__all__ = [
    "AppConfig",
    "AsyncpgConnection",
    "Capability",
    "Client",
    "ClientConfig",
    "CommandProxy",
    "ConfigError",
    "Connection",
    "ConnectionManager",
    "ConnectionProfileConfig",
    "DbapiConnection",
    "DbapiConnector",
    "ErrorClass",
    "ErrorInfo",
    "FetchMode",
    "MAX_RECONNECT_ATTEMPTS",
    "ParamType",
    "SUCCESS",
    "SteadyDBError",
    "Statement",
    "load_config",
    "merge_error_info",
    "open_connection",
]
