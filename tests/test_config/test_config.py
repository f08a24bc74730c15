"""Tests for environment-driven configuration."""

from pathlib import Path

import pytest

from msgraph_mcp.config import AuthConfig, CacheConfig, ConfigError, ServerConfig

_ENV_VARS = (
    "TENANT_ID",
    "CLIENT_ID",
    "MSAL_CACHE_PATH",
    "CACHE_TTL_MS",
    "CACHE_MAX_ENTRIES",
    "ATTACHMENT_CACHE_MAX_ENTRIES",
    "CACHE_SWEEP_INTERVAL_MS",
    "USER_EMAIL",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def auth_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TENANT_ID", "tenant-123")
    monkeypatch.setenv("CLIENT_ID", "client-456")


# ── AuthConfig ─────────────────────────────────────────────────────────────────


class TestAuthConfig:
    def test_missing_variables_all_listed(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            AuthConfig.from_env()
        assert "TENANT_ID" in str(exc_info.value)
        assert "CLIENT_ID" in str(exc_info.value)

    def test_one_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TENANT_ID", "tenant-123")
        with pytest.raises(ConfigError, match="CLIENT_ID"):
            AuthConfig.from_env()

    def test_from_env(self, auth_env: None) -> None:
        config = AuthConfig.from_env()
        assert config.tenant_id == "tenant-123"
        assert config.client_id == "client-456"
        assert config.authority == "https://login.microsoftonline.com/tenant-123"
        assert config.cache_path.name == "msal-cache.json"

    def test_cache_path_override(self, auth_env: None, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("MSAL_CACHE_PATH", str(tmp_path / "tokens.json"))
        assert AuthConfig.from_env().cache_path == tmp_path / "tokens.json"

    def test_scopes_exclude_reserved(self) -> None:
        config = AuthConfig(tenant_id="t", client_id="c")
        assert "offline_access" not in config.scopes
        assert "https://graph.microsoft.com/Mail.Send" in config.scopes

    def test_config_error_is_value_error(self) -> None:
        assert issubclass(ConfigError, ValueError)


# ── CacheConfig ────────────────────────────────────────────────────────────────


class TestCacheConfig:
    def test_defaults(self) -> None:
        config = CacheConfig.from_env()
        assert config.ttl_ms == 86_400_000
        assert config.max_entries == 100
        assert config.max_attachment_entries == 100
        assert config.sweep_interval_ms == 300_000

    def test_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CACHE_TTL_MS", "1000")
        monkeypatch.setenv("CACHE_MAX_ENTRIES", "7")
        monkeypatch.setenv("ATTACHMENT_CACHE_MAX_ENTRIES", "3")
        monkeypatch.setenv("CACHE_SWEEP_INTERVAL_MS", "0")
        assert CacheConfig.from_env() == CacheConfig(
            ttl_ms=1000, max_entries=7, max_attachment_entries=3, sweep_interval_ms=0
        )

    def test_blank_uses_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CACHE_MAX_ENTRIES", "  ")
        assert CacheConfig.from_env().max_entries == 100

    def test_non_integer_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CACHE_TTL_MS", "a day")
        with pytest.raises(ConfigError, match="CACHE_TTL_MS"):
            CacheConfig.from_env()


# ── ServerConfig ───────────────────────────────────────────────────────────────


class TestServerConfig:
    def test_from_env(self, auth_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("USER_EMAIL", "alice@contoso.com")
        config = ServerConfig.from_env()
        assert config.user_email == "alice@contoso.com"
        assert config.log_level == "info"
        assert config.logging_level == "INFO"
        assert config.cache == CacheConfig()

    def test_warn_maps_to_warning(self, auth_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARN")
        assert ServerConfig.from_env().logging_level == "WARNING"

    def test_invalid_log_level(self, auth_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "verbose")
        with pytest.raises(ConfigError, match="LOG_LEVEL"):
            ServerConfig.from_env()

    def test_missing_auth_fails(self) -> None:
        with pytest.raises(ConfigError):
            ServerConfig.from_env()
