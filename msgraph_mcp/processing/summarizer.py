"""Preview summarizer — fixed-shape, token-efficient projections of upstream records.

Every function here is pure and total: missing optional fields fall back to
defaults rather than raising, and excerpts are always strings.
"""

import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote, urlparse

from msgraph_mcp.graph.types import Attachment, MailMessage, RawRecord, Recipient, RetrievalHit
from msgraph_mcp.storage.references import format_search_reference

ELLIPSIS = "..."
#: Content-search excerpts stay within this many characters (plus ellipsis).
EXCERPT_CHAR_LIMIT = 150
#: Mail snippets are shorter — a batch search can return hundreds of them.
SNIPPET_CHAR_LIMIT = 100

NO_SUBJECT = "(No subject)"
UNKNOWN_SENDER = "Unknown"

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


# ── Summary shapes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EmailSummary:
    message_id: str
    received_date_time: str
    subject: str
    sender: str
    snippet: str
    has_attachments: bool
    importance: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "receivedDateTime": self.received_date_time,
            "subject": self.subject,
            "from": self.sender,
            "snippet": self.snippet,
            "hasAttachments": self.has_attachments,
            "importance": self.importance,
        }


@dataclass(frozen=True)
class HitSummary:
    """Brief for one content-search hit, pointing back at the cached full hit."""

    result_id: str
    title: str
    url: str
    relevance: float
    excerpt: str
    resource_type: str
    resource_uri: str
    sensitivity_label: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "resultId": self.result_id,
            "title": self.title,
            "url": self.url,
            "relevance": self.relevance,
            "briefExcerpt": self.excerpt,
            "resourceType": self.resource_type,
            "resourceUri": self.resource_uri,
        }
        if self.sensitivity_label:
            data["sensitivityLabel"] = self.sensitivity_label
        if self.metadata:
            data["metadata"] = self.metadata
        return data


@dataclass(frozen=True)
class AttachmentSummary:
    id: str
    name: str
    content_type: str
    size: int
    is_inline: bool
    last_modified_date_time: str | None = None
    resource_uri: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "contentType": self.content_type,
            "size": self.size,
            "isInline": self.is_inline,
        }
        if self.last_modified_date_time:
            data["lastModifiedDateTime"] = self.last_modified_date_time
        if self.resource_uri:
            data["resourceUri"] = self.resource_uri
        return data


Summary = EmailSummary | HitSummary | AttachmentSummary


# ── Text helpers ───────────────────────────────────────────────────────────────


def strip_html(html: str) -> str:
    """Remove tags, leaving text content."""
    return _TAG_RE.sub("", html).strip()


def truncate_text(text: str | None, max_length: int) -> str:
    """Collapse whitespace and cut to `max_length` at a word boundary.

    A truncated result ends with ``...``.  If the first `max_length`
    characters contain no space at all, the cut falls mid-word.
    """
    if not text:
        return ""
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    if text[max_length] == " ":
        return truncated.rstrip() + ELLIPSIS
    last_space = truncated.rfind(" ")
    if last_space > 0:
        return truncated[:last_space] + ELLIPSIS
    return truncated + ELLIPSIS


def hit_title(hit: RetrievalHit) -> str:
    """Metadata title, else the last URL path segment, else the URL itself."""
    title = hit.metadata.get("title")
    if title:
        return str(title)
    segment = unquote(urlparse(hit.web_url).path.rstrip("/").rsplit("/", 1)[-1])
    return segment or hit.web_url or "(Untitled)"


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 ** 3:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / 1024 ** 3:.1f} GB"


def _sender(message: MailMessage) -> str:
    return message.sender_name or message.sender_address or UNKNOWN_SENDER


def _snippet(message: MailMessage) -> str:
    if message.body_preview:
        return truncate_text(message.body_preview, SNIPPET_CHAR_LIMIT)
    if message.body:
        return truncate_text(strip_html(message.body), SNIPPET_CHAR_LIMIT)
    return ""


# ── Summarizers ────────────────────────────────────────────────────────────────


def summarize_message(message: MailMessage) -> EmailSummary:
    return EmailSummary(
        message_id=message.id,
        received_date_time=message.received_date_time or "",
        subject=message.subject or NO_SUBJECT,
        sender=_sender(message),
        snippet=_snippet(message),
        has_attachments=message.has_attachments,
        importance=message.importance or "normal",
    )


def summarize_hit(hit: RetrievalHit, index: int = 0, search_id: str | None = None) -> HitSummary:
    """Brief for a hit stored at `index` of cached search `search_id`.

    The excerpt is the single highest-scoring extract; the others stay in
    the cache for drill-down.
    """
    best = max(hit.extracts, key=lambda e: e.relevance_score, default=None)
    metadata = {
        key: hit.metadata[key]
        for key in ("fileExtension", "lastModifiedDateTime")
        if hit.metadata.get(key)
    }
    return HitSummary(
        result_id=f"result-{index}",
        title=hit_title(hit),
        url=hit.web_url,
        relevance=hit.top_score,
        excerpt=truncate_text(best.text, EXCERPT_CHAR_LIMIT) if best else "",
        resource_type=hit.resource_type,
        resource_uri=format_search_reference(search_id, index) if search_id else "",
        sensitivity_label=hit.sensitivity_label,
        metadata=metadata,
    )


def summarize_attachment(attachment: Attachment) -> AttachmentSummary:
    return AttachmentSummary(
        id=attachment.id,
        name=attachment.name,
        content_type=attachment.content_type,
        size=attachment.size,
        is_inline=attachment.is_inline,
        last_modified_date_time=attachment.last_modified_date_time,
    )


def summarize(record: RawRecord, index: int = 0, search_id: str | None = None) -> Summary:
    """Summarize any record kind; `index`/`search_id` only matter for hits."""
    if isinstance(record, MailMessage):
        return summarize_message(record)
    if isinstance(record, RetrievalHit):
        return summarize_hit(record, index, search_id)
    if isinstance(record, Attachment):
        return summarize_attachment(record)
    raise TypeError(f"Cannot summarize {type(record).__name__}")


# ── Full views (drill-down) ────────────────────────────────────────────────────


def _recipients(recipients: list[Recipient]) -> list[dict[str, str]]:
    return [{"name": r.name, "address": r.address} for r in recipients]


def full_message_view(message: MailMessage) -> dict[str, Any]:
    """Summary plus recipients and the complete body."""
    return {
        **summarize_message(message).to_dict(),
        "to": _recipients(message.to),
        "cc": _recipients(message.cc),
        "body": message.body or "",
        "bodyType": message.body_type or "text",
    }


def full_hit_view(hit: RetrievalHit) -> dict[str, Any]:
    """Every extract with its own score, plus metadata and classification."""
    extracts = sorted(hit.extracts, key=lambda e: e.relevance_score, reverse=True)
    return {
        "title": hit_title(hit),
        "url": hit.web_url,
        "resourceType": hit.resource_type,
        "relevance": hit.top_score,
        "extracts": [{"text": e.text, "relevanceScore": e.relevance_score} for e in extracts],
        "metadata": hit.metadata,
        "sensitivityLabel": hit.sensitivity_label,
    }
