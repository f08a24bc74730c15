"""Server configuration — built from environment variables (and .env via python-dotenv)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# MSAL reserves offline_access/openid/profile and adds them itself.
GRAPH_SCOPES: tuple[str, ...] = (
    "https://graph.microsoft.com/Mail.Read",
    "https://graph.microsoft.com/Mail.Read.Shared",
    "https://graph.microsoft.com/Mail.ReadWrite",
    "https://graph.microsoft.com/Mail.Send",
    "https://graph.microsoft.com/Mail.Send.Shared",
    "https://graph.microsoft.com/User.Read",
)

_REQUIRED_ENV = ("TENANT_ID", "CLIENT_ID")
_LOG_LEVELS = {"debug", "info", "warning", "warn", "error"}


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


def _default_cache_path() -> Path:
    return Path.home() / ".msgraph-mcp" / "msal-cache.json"


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class AuthConfig:
    """Azure AD app registration used for the device code flow."""

    tenant_id: str
    client_id: str
    scopes: tuple[str, ...] = GRAPH_SCOPES
    cache_path: Path = field(default_factory=_default_cache_path)

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id}"

    @classmethod
    def from_env(cls) -> AuthConfig:
        """Build AuthConfig from TENANT_ID / CLIENT_ID / MSAL_CACHE_PATH.

        Raises:
            ConfigError: listing every required variable that is unset.
        """
        missing = [key for key in _REQUIRED_ENV if not os.environ.get(key)]
        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}. "
                "Set them in the environment or a .env file."
            )
        cache_path = os.environ.get("MSAL_CACHE_PATH")
        return cls(
            tenant_id=os.environ["TENANT_ID"],
            client_id=os.environ["CLIENT_ID"],
            cache_path=Path(cache_path) if cache_path else _default_cache_path(),
        )


@dataclass(frozen=True)
class CacheConfig:
    """Sizing and expiry for the result cache.

    The search store and the attachment store are sized independently.
    A ``sweep_interval_ms`` of 0 disables the background sweeper.
    """

    ttl_ms: int = 86_400_000
    max_entries: int = 100
    max_attachment_entries: int = 100
    sweep_interval_ms: int = 300_000

    @classmethod
    def from_env(cls) -> CacheConfig:
        return cls(
            ttl_ms=_int_env("CACHE_TTL_MS", 86_400_000),
            max_entries=_int_env("CACHE_MAX_ENTRIES", 100),
            max_attachment_entries=_int_env("ATTACHMENT_CACHE_MAX_ENTRIES", 100),
            sweep_interval_ms=_int_env("CACHE_SWEEP_INTERVAL_MS", 300_000),
        )


@dataclass(frozen=True)
class ServerConfig:
    """Everything the MCP server needs at startup."""

    auth: AuthConfig
    cache: CacheConfig = field(default_factory=CacheConfig)
    #: Mailbox the mail tools use when a call names none.
    user_email: str | None = None
    log_level: str = "info"

    @classmethod
    def from_env(cls) -> ServerConfig:
        log_level = os.environ.get("LOG_LEVEL", "info").lower()
        if log_level not in _LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {log_level!r}")
        return cls(
            auth=AuthConfig.from_env(),
            cache=CacheConfig.from_env(),
            user_email=os.environ.get("USER_EMAIL") or None,
            log_level=log_level,
        )

    @property
    def logging_level(self) -> str:
        """The log level as the logging module spells it."""
        return "WARNING" if self.log_level == "warn" else self.log_level.upper()
