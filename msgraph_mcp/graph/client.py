"""Microsoft Graph client — wraps the REST API behind a typed async interface."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from msgraph_mcp.config import AuthConfig
from msgraph_mcp.graph.auth import GraphAuthenticator, TokenProvider
from msgraph_mcp.graph.batch import BatchDispatcher
from msgraph_mcp.graph.types import (
    Attachment,
    BatchRequest,
    BatchResponse,
    MailFolder,
    MailMessage,
    RetrievalExtract,
    RetrievalHit,
    parse_message,
    parse_messages,
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

_MAX_RETRIES = 3
_BASE_RETRY_DELAY_SECONDS = 1.0
_DEFAULT_RETRY_AFTER_SECONDS = 5
_TIMEOUT_SECONDS = 30.0

MESSAGE_SUMMARY_FIELDS = "id,subject,from,receivedDateTime,bodyPreview,hasAttachments,importance"
_MESSAGE_DETAIL_FIELDS = MESSAGE_SUMMARY_FIELDS + ",toRecipients,ccRecipients"
_FOLDER_FIELDS = "id,displayName,parentFolderId,childFolderCount,unreadItemCount,totalItemCount"
_ATTACHMENT_FIELDS = "id,name,contentType,size,isInline,lastModifiedDateTime"

#: Copilot retrieval caps results per call.
MAX_RETRIEVAL_RESULTS = 25
RETRIEVAL_METADATA_FIELDS = [
    "title",
    "author",
    "lastModifiedDateTime",
    "createdDateTime",
    "fileExtension",
    "size",
]


class GraphError(Exception):
    """Raised when a Graph request fails and will not be retried."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitError(GraphError):
    """Raised when Graph keeps answering 429 after every retry."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


def mailbox_path(mailbox: str | None) -> str:
    """Return ``/me`` or ``/users/<encoded mailbox>`` for shared mailbox access."""
    if not mailbox:
        return "/me"
    return f"/users/{quote(mailbox, safe='')}"


def build_url(path: str, params: dict[str, Any]) -> str:
    """Join a path and OData query parameters, keeping ``$`` and ``,`` readable."""
    if not params:
        return path
    return f"{path}?{urlencode(params, quote_via=quote, safe='$,')}"


class GraphClient:
    """Thin async wrapper around the Graph endpoints the tools need.

    Every request carries a bearer token from the TokenProvider.  Failures
    are retried according to status:

    - 429: wait ``Retry-After`` seconds (default 5) and retry;
    - 401 on the first attempt: force a token refresh and retry once;
    - 5xx: exponential backoff from one second;
    - anything else: raise GraphError immediately.

    Use the `graph_client()` context manager to construct and tear down
    correctly.
    """

    def __init__(self, http: httpx.AsyncClient, tokens: TokenProvider) -> None:
        self._http = http
        self._tokens = tokens
        self._batches = BatchDispatcher(self.post_batch)

    # ── Public API ─────────────────────────────────────────────────────────────

    async def search_messages(
        self, query: str, max_results: int = 25, mailbox: str | None = None
    ) -> list[MailMessage]:
        """Run a KQL ``$search`` over the mailbox and return lightweight messages."""
        url = build_url(
            f"{mailbox_path(mailbox)}/messages",
            {"$search": f'"{query}"', "$top": max_results, "$select": MESSAGE_SUMMARY_FIELDS},
        )
        raw = await self.request("GET", url)
        return parse_messages(raw)

    async def get_message(
        self, message_id: str, include_body: bool = False, mailbox: str | None = None
    ) -> MailMessage:
        """Return a single message, with its full body when `include_body` is set."""
        fields = _MESSAGE_DETAIL_FIELDS + (",body" if include_body else "")
        url = build_url(
            f"{mailbox_path(mailbox)}/messages/{quote(message_id, safe='')}",
            {"$select": fields},
        )
        raw = await self.request("GET", url)
        if not isinstance(raw, dict):
            raise GraphError(f"Unexpected response for message {message_id!r}: {type(raw)}")
        return parse_message(raw)

    async def list_mail_folders(self, mailbox: str | None = None) -> list[MailFolder]:
        """Return the top-level mail folders."""
        url = build_url(f"{mailbox_path(mailbox)}/mailFolders", {"$select": _FOLDER_FIELDS})
        raw = await self.request("GET", url)
        values = raw.get("value", []) if isinstance(raw, dict) else []
        return [self._parse_folder(f) for f in values if isinstance(f, dict)]

    async def get_attachments(
        self, message_id: str, include_content: bool = False, mailbox: str | None = None
    ) -> list[Attachment]:
        """Return a message's attachments; content bytes only when asked for."""
        path = f"{mailbox_path(mailbox)}/messages/{quote(message_id, safe='')}/attachments"
        # contentBytes is not selectable on the base attachment type, so a
        # content request fetches the full resource.
        url = path if include_content else build_url(path, {"$select": _ATTACHMENT_FIELDS})
        raw = await self.request("GET", url)
        values = raw.get("value", []) if isinstance(raw, dict) else []
        return [
            self._parse_attachment(a, message_id, include_content)
            for a in values
            if isinstance(a, dict)
        ]

    async def copilot_retrieval(
        self,
        query: str,
        data_source: str = "sharePoint",
        filter_expression: str | None = None,
        max_results: int = 10,
        include_metadata: bool = False,
    ) -> list[RetrievalHit]:
        """Natural-language search across SharePoint, OneDrive, or connectors."""
        payload: dict[str, Any] = {
            "queryString": query,
            "dataSource": data_source,
            "maximumNumberOfResults": max(1, min(max_results, MAX_RETRIEVAL_RESULTS)),
        }
        if filter_expression:
            payload["filterExpression"] = filter_expression
        if include_metadata:
            payload["resourceMetadata"] = RETRIEVAL_METADATA_FIELDS

        logger.info("Copilot retrieval: %r on %s", query, data_source)
        raw = await self.request("POST", "/copilot/retrieval", payload)
        hits = raw.get("retrievalHits", []) if isinstance(raw, dict) else []
        logger.info("Found %d retrieval hit(s)", len(hits))
        return [self._parse_hit(h) for h in hits if isinstance(h, dict)]

    async def create_draft(self, message: dict[str, Any], mailbox: str | None = None) -> str:
        """Create a draft message and return its id."""
        raw = await self.request("POST", f"{mailbox_path(mailbox)}/messages", message)
        if not isinstance(raw, dict) or not raw.get("id"):
            raise GraphError("Draft creation returned no message id", body=raw)
        return str(raw["id"])

    async def send_draft(self, message_id: str, mailbox: str | None = None) -> None:
        """Send a previously created draft."""
        await self.request(
            "POST", f"{mailbox_path(mailbox)}/messages/{quote(message_id, safe='')}/send"
        )

    async def execute_batch(self, requests: list[BatchRequest]) -> dict[str, BatchResponse]:
        """Dispatch logical requests in chunks of 20; one outcome per request id."""
        return await self._batches.dispatch(requests)

    async def post_batch(self, requests: list[BatchRequest]) -> list[BatchResponse]:
        """Send a single physical ``$batch`` call (at most 20 requests)."""
        raw = await self.request("POST", "/$batch", {"requests": [r.to_dict() for r in requests]})
        responses = raw.get("responses", []) if isinstance(raw, dict) else []
        return [
            BatchResponse(
                id=str(r.get("id", "")),
                status=int(r.get("status", 0)),
                body=r.get("body"),
                headers=r.get("headers"),
            )
            for r in responses
            if isinstance(r, dict)
        ]

    async def request(self, method: str, url: str, body: Any = None) -> Any:
        """Issue a Graph request with retry, returning the decoded JSON (or None).

        Raises:
            GraphError: on non-retryable statuses or once retries run out.
            AuthError: propagated untouched from the token provider.
        """
        last_error: GraphError | None = None
        for attempt in range(_MAX_RETRIES):
            token = await self._tokens.get_access_token()
            logger.debug("Graph → %s %s (attempt %d)", method, url, attempt + 1)
            try:
                response = await self._http.request(
                    method,
                    url,
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.TransportError as exc:
                last_error = GraphError(f"Graph transport error: {exc}")
                delay = _BASE_RETRY_DELAY_SECONDS * 2**attempt
                logger.warning("Transport error on %s %s: %s — retrying in %.1fs", method, url, exc, delay)
                await asyncio.sleep(delay)
                continue

            status = response.status_code
            if status < 400:
                return self._decode(response)

            payload = self._decode(response)
            message = self._error_message(payload) or response.reason_phrase

            if status == 429:
                retry_after = self._retry_after(response)
                last_error = RateLimitError(f"Rate limited: {message}", retry_after)
                logger.warning("Rate limited on %s — retrying after %ss", url, retry_after)
                await asyncio.sleep(retry_after)
                continue

            if status == 401 and attempt == 0:
                logger.warning("Graph returned 401 — refreshing token")
                await self._tokens.get_access_token(force_refresh=True)
                last_error = GraphError(f"Unauthorized: {message}", status, payload)
                continue

            if 500 <= status < 600:
                delay = _BASE_RETRY_DELAY_SECONDS * 2**attempt
                last_error = GraphError(f"Server error {status}: {message}", status, payload)
                logger.warning("Server error (%d) on %s — retrying in %.1fs", status, url, delay)
                await asyncio.sleep(delay)
                continue

            raise GraphError(f"Graph API request failed ({status}): {message}", status, payload)

        raise GraphError(
            f"Failed after {_MAX_RETRIES} attempts: {last_error}",
            last_error.status_code if last_error else None,
            last_error.body if last_error else None,
        )

    # ── Internal helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_message(payload: Any) -> str:
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        return ""

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        raw = response.headers.get("retry-after")
        try:
            return float(raw) if raw is not None else _DEFAULT_RETRY_AFTER_SECONDS
        except ValueError:
            return _DEFAULT_RETRY_AFTER_SECONDS

    @staticmethod
    def _parse_folder(data: dict[str, Any]) -> MailFolder:
        return MailFolder(
            id=str(data.get("id", "")),
            display_name=str(data.get("displayName", "")),
            parent_folder_id=data.get("parentFolderId") or None,
            child_folder_count=int(data.get("childFolderCount") or 0),
            unread_item_count=int(data.get("unreadItemCount") or 0),
            total_item_count=int(data.get("totalItemCount") or 0),
        )

    @staticmethod
    def _parse_attachment(data: dict[str, Any], message_id: str, include_content: bool) -> Attachment:
        return Attachment(
            id=str(data.get("id", "")),
            message_id=message_id,
            name=str(data.get("name") or "attachment"),
            content_type=str(data.get("contentType") or "application/octet-stream"),
            size=int(data.get("size") or 0),
            is_inline=bool(data.get("isInline", False)),
            last_modified_date_time=data.get("lastModifiedDateTime") or None,
            content_bytes=(data.get("contentBytes") or None) if include_content else None,
        )

    @staticmethod
    def _parse_hit(data: dict[str, Any]) -> RetrievalHit:
        extracts = [
            RetrievalExtract(text=str(e.get("text", "")), relevance_score=float(e.get("relevanceScore") or 0.0))
            for e in data.get("extracts") or []
            if isinstance(e, dict)
        ]
        label = data.get("sensitivityLabel") or {}
        return RetrievalHit(
            web_url=str(data.get("webUrl", "")),
            resource_type=str(data.get("resourceType", "")),
            extracts=extracts,
            metadata=dict(data.get("resourceMetadata") or {}),
            sensitivity_label=label.get("name") or None,
        )


@asynccontextmanager
async def graph_client(
    config: AuthConfig,
    *,
    authenticator: GraphAuthenticator | None = None,
) -> AsyncIterator[GraphClient]:
    """Async context manager that yields an authenticated, ready-to-use GraphClient.

    Runs the authenticator's initialization (which may prompt for a device
    code on first use) and closes the HTTP connection pool on exit.

    Example::

        async with graph_client(AuthConfig.from_env()) as client:
            messages = await client.search_messages("from:alice")
    """
    auth = authenticator or GraphAuthenticator(config)
    await auth.initialize()
    async with httpx.AsyncClient(base_url=GRAPH_BASE_URL, timeout=_TIMEOUT_SECONDS) as http:
        logger.info("Graph client initialized")
        yield GraphClient(http, auth)
