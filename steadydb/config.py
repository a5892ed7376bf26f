"""Client configuration models and config-file loading helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError

CONFIG_FILE = Path.home() / ".config" / "steadydb" / "config.toml"

LOG = logging.getLogger(__name__)


class ClientConfig(BaseModel):
    """Connection parameters captured once when a client is built."""

    model_config = ConfigDict(frozen=True)

    database: str = Field(..., min_length=1)
    username: str = "root"
    password: str = Field("", repr=False)
    charset: str = "UTF8"
    host: str = "localhost"
    port: int = Field(3306, ge=1, le=65535)
    persistent: bool = True
    lazy: bool = False
    driver: str = Field(
        "asyncpg",
        description="Transport used to open connections: 'asyncpg' or an importable DB-API module name.",
    )
    connect_timeout: float = Field(5.0, gt=0.0)
    retry_backoff: float = Field(
        0.0,
        ge=0.0,
        description="Seconds to wait before each retry of a transiently failing operation.",
    )


class ConnectionProfileConfig(ClientConfig):
    """Named connection profile stored in config.toml."""

    name: str = Field(..., min_length=1)

    def client_config(self) -> ClientConfig:
        """Strip the profile name and return plain connection parameters."""

        return ClientConfig(**self.model_dump(exclude={"name"}))


class AppConfig(BaseModel):
    """Shape of the configuration file."""

    profiles: list[ConnectionProfileConfig] = Field(default_factory=list)
    active_profile: str | None = None

    def profile(self, name: str | None = None) -> ClientConfig:
        """Resolve a profile by name, falling back to the active then first profile."""

        wanted = name or self.active_profile
        if wanted is None:
            if not self.profiles:
                raise ValueError("No connection profiles configured.")
            return self.profiles[0].client_config()
        for profile in self.profiles:
            if profile.name == wanted:
                return profile.client_config()
        raise ValueError(f"Profile '{wanted}' not found.")


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        LOG.warning("Ignoring unreadable config file", extra={"path": str(CONFIG_FILE)})
        return AppConfig()

    profiles: list[ConnectionProfileConfig] = []
    for entry in data.get("profiles", []):
        try:
            profiles.append(ConnectionProfileConfig(**entry))
        except ValidationError as exc:
            LOG.warning(
                "Skipping invalid connection profile",
                extra={"profile": entry.get("name"), "errors": exc.error_count()},
            )
    active = data.get("active_profile")
    return AppConfig(profiles=profiles, active_profile=active if isinstance(active, str) else None)


def _read_config_file() -> dict[str, list[dict[str, object]] | str]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, list[dict[str, object]] | str] = {}
    active_profile = raw.get("active_profile")
    if isinstance(active_profile, str):
        data["active_profile"] = active_profile
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        data["profiles"] = [dict(profile) for profile in profiles if isinstance(profile, dict)]
    return data


__all__ = [
    "CONFIG_FILE",
    "AppConfig",
    "ClientConfig",
    "ConnectionProfileConfig",
    "load_config",
]
