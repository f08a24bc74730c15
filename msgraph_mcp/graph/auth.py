"""Bearer-token provider for Microsoft Graph — MSAL device code flow with a persisted cache."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import msal

from msgraph_mcp.config import AuthConfig

logger = logging.getLogger(__name__)

# Refresh tokens that expire within this window rather than handing them out.
_EXPIRY_MARGIN_SECONDS = 300


class AuthError(Exception):
    """Raised when a Graph access token cannot be acquired.

    Callers must not retry on this — only the authenticator knows how to
    refresh, and it has already tried.
    """


@runtime_checkable
class TokenProvider(Protocol):
    """Anything that can hand out a valid Graph bearer token."""

    async def get_access_token(self, force_refresh: bool = False) -> str:
        ...


class GraphAuthenticator:
    """Acquires and refreshes Graph tokens for a single signed-in user.

    Tokens are cached in an MSAL ``SerializableTokenCache`` persisted to
    ``config.cache_path`` (mode 0600) so the device code prompt only appears
    on first run or after the refresh token lapses.

    Usage::

        auth = GraphAuthenticator(AuthConfig.from_env())
        await auth.initialize()
        token = await auth.get_access_token()
    """

    def __init__(self, config: AuthConfig, app: Any = None) -> None:
        self._config = config
        self._cache = msal.SerializableTokenCache()
        self._load_cache()
        self._app = app or msal.PublicClientApplication(
            config.client_id,
            authority=config.authority,
            token_cache=self._cache,
        )
        self._access_token: str | None = None
        self._expires_at: float = 0.0

    @property
    def is_authenticated(self) -> bool:
        return self._access_token is not None

    async def initialize(self) -> None:
        """Load a cached token, refreshing silently or falling back to device code."""
        logger.info("Initializing authentication...")
        result = await asyncio.to_thread(self._acquire_silent, False)
        if result is not None:
            self._store(result)
            logger.info("Using cached Graph credentials")
            return

        logger.info("No usable cached token — starting device code authentication")
        result = await asyncio.to_thread(self._acquire_by_device_code)
        self._store(result)
        logger.info("Authentication successful")

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """Return a bearer token valid for at least the next five minutes.

        Raises:
            AuthError: if not initialized, or if silent refresh fails.
        """
        if self._access_token is None:
            raise AuthError("Not authenticated. Call initialize() first.")
        if not force_refresh and self._expires_at - time.time() > _EXPIRY_MARGIN_SECONDS:
            return self._access_token

        result = await asyncio.to_thread(self._acquire_silent, force_refresh)
        if result is None:
            raise AuthError("Token expired and could not be refreshed; run `msgraph-mcp login`")
        self._store(result)
        logger.debug("Access token refreshed")
        return self._access_token

    # ── Internal helpers ───────────────────────────────────────────────────────

    def _acquire_silent(self, force_refresh: bool) -> dict[str, Any] | None:
        accounts = self._app.get_accounts()
        if not accounts:
            return None
        result = self._app.acquire_token_silent(
            list(self._config.scopes), account=accounts[0], force_refresh=force_refresh
        )
        if not result or "access_token" not in result:
            return None
        return result

    def _acquire_by_device_code(self) -> dict[str, Any]:
        flow = self._app.initiate_device_flow(scopes=list(self._config.scopes))
        if "user_code" not in flow:
            raise AuthError(f"Failed to start device code flow: {flow.get('error_description', flow)}")
        # MSAL's message already contains the URL and the code.
        logger.warning("MICROSOFT AUTHENTICATION REQUIRED — %s", flow["message"])
        result = self._app.acquire_token_by_device_flow(flow)
        if "access_token" not in result:
            raise AuthError(
                f"Authentication failed: {result.get('error_description', result.get('error'))}"
            )
        return result

    def _store(self, result: dict[str, Any]) -> None:
        self._access_token = str(result["access_token"])
        self._expires_at = time.time() + int(result.get("expires_in", 3600))
        self._save_cache()

    def _load_cache(self) -> None:
        path = self._config.cache_path
        if path.exists():
            self._cache.deserialize(path.read_text(encoding="utf-8"))
            logger.debug("Loaded MSAL token cache from %s", path)

    def _save_cache(self) -> None:
        if not self._cache.has_state_changed:
            return
        path = Path(self._config.cache_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self._cache.serialize(), encoding="utf-8")
            os.chmod(path, 0o600)
            logger.debug("Saved MSAL token cache to %s", path)
        except OSError as exc:
            logger.warning("Failed to save token cache to %s: %s", path, exc)
