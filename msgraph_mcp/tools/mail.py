"""Mail tools — email search, retrieval, attachments, and sending.

Every tool returns plain JSON-ready values shaped for a tight response
budget: summaries instead of raw Graph messages, attachment references
instead of inline base64.
"""

import base64
import binascii
import logging
from pathlib import Path
from typing import Any

from msgraph_mcp.graph.client import MESSAGE_SUMMARY_FIELDS, GraphClient, build_url, mailbox_path
from msgraph_mcp.graph.types import Attachment, BatchRequest, MailFolder
from msgraph_mcp.processing.preview import (
    build_entity_previews,
    log_result_stats,
    summarize_messages,
)
from msgraph_mcp.processing.summarizer import (
    format_bytes,
    full_message_view,
    summarize_attachment,
    summarize_message,
)
from msgraph_mcp.storage.cache import ResultCache
from msgraph_mcp.storage.references import format_attachment_reference, to_protocol_uri

logger = logging.getLogger(__name__)

_KQL_SPECIAL = set('\\:"()')


class ToolError(Exception):
    """Raised when a tool is called in a way it cannot satisfy."""


# ── KQL ────────────────────────────────────────────────────────────────────────


def escape_kql(text: str) -> str:
    """Backslash-escape the characters KQL treats as syntax: ``\\ : " ( )``."""
    return "".join(f"\\{ch}" if ch in _KQL_SPECIAL else ch for ch in text)


def build_entity_query(
    entity: str,
    keywords: list[str] | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
) -> str:
    """KQL matching `entity` as sender or in the subject, narrowed by keywords and dates."""
    escaped = escape_kql(entity)
    parts = [f"(from:{escaped} OR subject:{escaped})"]
    if keywords:
        parts.append("(" + " OR ".join(escape_kql(kw) for kw in keywords) + ")")
    if date_from:
        parts.append(f"received>={date_from}")
    if date_to:
        parts.append(f"received<={date_to}")
    return " AND ".join(parts)


def _folder_dict(folder: MailFolder) -> dict[str, Any]:
    return {
        "id": folder.id,
        "displayName": folder.display_name,
        "parentFolderId": folder.parent_folder_id,
        "childFolderCount": folder.child_folder_count,
        "unreadItemCount": folder.unread_item_count,
        "totalItemCount": folder.total_item_count,
    }


def _recipients(addresses: list[str]) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": address}} for address in addresses]


def _decode_content(attachment: Attachment) -> bytes:
    if not attachment.content_bytes:
        raise ToolError(f"Attachment {attachment.id} has no content")
    try:
        return base64.b64decode(attachment.content_bytes, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ToolError(f"Attachment {attachment.id} has invalid content: {exc}") from exc


class MailTools:
    """The mail-facing tools, sharing one Graph client and one result cache.

    `default_mailbox` is used whenever a call does not name a mailbox;
    when both are unset, requests go to the signed-in user (``/me``).
    """

    def __init__(self, client: GraphClient, cache: ResultCache, default_mailbox: str | None = None) -> None:
        self._client = client
        self._cache = cache
        self._default_mailbox = default_mailbox

    def _mailbox(self, mailbox: str | None) -> str | None:
        return mailbox or self._default_mailbox

    # ── Search ─────────────────────────────────────────────────────────────────

    async def search_emails_by_entities(
        self,
        entities: list[str],
        keywords: list[str] | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        max_results_per_entity: int = 5,
        mailbox: str | None = None,
    ) -> dict[str, Any]:
        """One search per entity, batched; every entity gets a result, even on failure."""
        logger.info("Searching emails for %d entit%s", len(entities), "y" if len(entities) == 1 else "ies")
        requests = [
            BatchRequest(
                id=str(index),
                url=build_url(
                    f"{mailbox_path(self._mailbox(mailbox))}/messages",
                    {
                        "$search": f'"{build_entity_query(entity, keywords, date_from, date_to)}"',
                        "$top": max_results_per_entity,
                        "$select": MESSAGE_SUMMARY_FIELDS,
                    },
                ),
            )
            for index, entity in enumerate(entities)
        ]
        outcomes = await self._client.execute_batch(requests)
        previews = build_entity_previews(outcomes, entities, max_results_per_entity)
        result = {entity: preview.to_dict() for entity, preview in previews.items()}
        log_result_stats(result, "Batch search results")
        return result

    async def search_emails(
        self, query: str, max_results: int = 25, mailbox: str | None = None
    ) -> list[dict[str, Any]]:
        """Newest-first summaries for a free-form KQL query."""
        logger.info("Searching emails: %r%s", query, f" in mailbox {mailbox}" if mailbox else "")
        messages = await self._client.search_messages(query, max_results, self._mailbox(mailbox))
        logger.info("Found %d email(s)", len(messages))
        result = [s.to_dict() for s in summarize_messages(messages, max_results)]
        log_result_stats(result, "Search results")
        return result

    # ── Messages ───────────────────────────────────────────────────────────────

    async def get_email(
        self, message_id: str, include_body: bool = False, mailbox: str | None = None
    ) -> dict[str, Any]:
        logger.info("Fetching email %s", message_id)
        message = await self._client.get_message(message_id, include_body, self._mailbox(mailbox))
        if include_body:
            result = full_message_view(message)
            log_result_stats(result, "Full email")
        else:
            result = summarize_message(message).to_dict()
            log_result_stats(result, "Email summary")
        return result

    async def list_mail_folders(self, mailbox: str | None = None) -> list[dict[str, Any]]:
        logger.info("Listing mail folders%s", f" for mailbox {mailbox}" if mailbox else "")
        folders = await self._client.list_mail_folders(self._mailbox(mailbox))
        logger.info("Found %d folder(s)", len(folders))
        return [_folder_dict(f) for f in folders]

    # ── Attachments ────────────────────────────────────────────────────────────

    async def get_attachments(
        self, message_id: str, include_content: bool = False, mailbox: str | None = None
    ) -> list[dict[str, Any]]:
        """Attachment metadata; with `include_content`, bytes are cached, not returned.

        Each summary then carries a ``resourceUri`` the client can read to
        fetch the bytes on demand.
        """
        logger.info("Fetching attachments for email %s", message_id)
        attachments = await self._client.get_attachments(message_id, include_content, self._mailbox(mailbox))
        summaries = []
        for attachment in attachments:
            summary = summarize_attachment(attachment).to_dict()
            if include_content and attachment.content_bytes:
                self._cache.set_attachment(
                    message_id,
                    attachment.id,
                    attachment.name,
                    attachment.content_type,
                    _decode_content(attachment),
                )
                summary["resourceUri"] = to_protocol_uri(format_attachment_reference(message_id, attachment.id))
            summaries.append(summary)

        total = sum(a.size for a in attachments)
        logger.info("Found %d attachment(s) for email %s (%s)", len(attachments), message_id, format_bytes(total))
        return summaries

    async def download_attachment(
        self,
        message_id: str,
        attachment_id: str,
        output_path: str,
        mailbox: str | None = None,
    ) -> dict[str, Any]:
        """Write an attachment to disk and return only where it went."""
        logger.info("Downloading attachment %s from email %s", attachment_id, message_id)
        attachments = await self._client.get_attachments(message_id, True, self._mailbox(mailbox))
        attachment = next((a for a in attachments if a.id == attachment_id), None)
        if attachment is None:
            raise ToolError(f"Attachment {attachment_id} not found in message {message_id}")
        content = _decode_content(attachment)

        path = Path(output_path).expanduser().resolve()
        if not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Created directory %s", path.parent)
        path.write_bytes(content)

        size = format_bytes(len(content))
        logger.info("Downloaded %s (%s) to %s", attachment.name, size, path)
        return {
            "success": True,
            "filePath": str(path),
            "fileName": attachment.name,
            "size": len(content),
            "message": f"Successfully downloaded {attachment.name} ({size})",
        }

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_message(
        self,
        to: list[str],
        subject: str,
        body: str,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
        body_type: str = "text",
        importance: str = "normal",
        send_immediately: bool = False,
        mailbox: str | None = None,
        from_address: str | None = None,
        attachments: list[dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        """Create a draft and, when `send_immediately` is set, send it.

        `attachments` items carry ``name``, ``contentType``, and base64
        ``contentBytes``.  Sending as `from_address` needs "Send as" rights.
        """
        if not to:
            raise ToolError("At least one recipient is required")
        logger.info("%s message %r", "Sending" if send_immediately else "Creating draft", subject)

        payload: dict[str, Any] = {
            "subject": subject,
            "body": {"contentType": body_type, "content": body},
            "toRecipients": _recipients(to),
            "importance": importance,
        }
        if cc:
            payload["ccRecipients"] = _recipients(cc)
        if bcc:
            payload["bccRecipients"] = _recipients(bcc)
        if from_address:
            payload["from"] = {"emailAddress": {"address": from_address}}
        if attachments:
            payload["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": a["name"],
                    "contentType": a.get("contentType", "application/octet-stream"),
                    "contentBytes": a["contentBytes"],
                }
                for a in attachments
            ]

        message_id = await self._client.create_draft(payload, self._mailbox(mailbox))
        logger.info("Draft created: %s", message_id)
        if send_immediately:
            await self._client.send_draft(message_id, self._mailbox(mailbox))
            logger.info("Message sent: %s", message_id)

        recipients: dict[str, list[str]] = {"to": to}
        if cc:
            recipients["cc"] = cc
        if bcc:
            recipients["bcc"] = bcc
        return {
            "messageId": message_id,
            "status": "sent" if send_immediately else "draft",
            "subject": subject,
            "recipients": recipients,
        }
