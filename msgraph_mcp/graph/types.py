"""Data types shared across the Graph client, processing, and cache modules.

Upstream records arrive as loosely-typed JSON.  They are parsed once, at the
client boundary, into one frozen dataclass per record kind so the rest of the
code can dispatch on type instead of probing optional keys.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Recipient:
    """A single To/Cc address."""

    address: str
    name: str = ""


@dataclass(frozen=True)
class MailMessage:
    """A mail message as returned by ``/messages``.

    Fields populated by a search ``$select`` (lightweight):
        id, subject, sender_name, sender_address, received_date_time,
        body_preview, has_attachments, importance

    Fields populated by a single-message fetch (full):
        body, body_type, to, cc  (plus all of the above)
    """

    id: str
    subject: str | None = None
    sender_name: str | None = None
    sender_address: str | None = None
    received_date_time: str | None = None
    body_preview: str | None = None
    body: str | None = None
    body_type: str | None = None
    has_attachments: bool = False
    importance: str | None = None
    to: list[Recipient] = field(default_factory=list)
    cc: list[Recipient] = field(default_factory=list)


@dataclass(frozen=True)
class RetrievalExtract:
    """One scored text passage from a content search hit."""

    text: str
    relevance_score: float


@dataclass(frozen=True)
class RetrievalHit:
    """A document hit from the Copilot retrieval API."""

    web_url: str
    resource_type: str
    extracts: list[RetrievalExtract] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    sensitivity_label: str | None = None

    @property
    def top_score(self) -> float:
        """Highest extract relevance, or 0.0 when the hit has no extracts."""
        return max((e.relevance_score for e in self.extracts), default=0.0)


@dataclass(frozen=True)
class Attachment:
    """A file attachment on a mail message.

    ``content_bytes`` is base64 text exactly as Graph returns it, and is only
    present when the caller asked for content.
    """

    id: str
    message_id: str
    name: str
    content_type: str = "application/octet-stream"
    size: int = 0
    is_inline: bool = False
    last_modified_date_time: str | None = None
    content_bytes: str | None = None


@dataclass(frozen=True)
class MailFolder:
    """A row from ``/mailFolders``."""

    id: str
    display_name: str
    parent_folder_id: str | None = None
    child_folder_count: int = 0
    unread_item_count: int = 0
    total_item_count: int = 0


#: Every record kind the summarizer and cache understand.
RawRecord = MailMessage | RetrievalHit | Attachment


# ── Batch ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BatchRequest:
    """One logical request inside a ``$batch`` call."""

    id: str
    url: str
    method: str = "GET"
    headers: dict[str, str] | None = None
    body: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "method": self.method, "url": self.url}
        if self.headers:
            data["headers"] = self.headers
        if self.body is not None:
            data["body"] = self.body
        return data


@dataclass(frozen=True)
class BatchResponse:
    """The outcome of one BatchRequest, real or synthesized."""

    id: str
    status: int
    body: Any = None
    headers: dict[str, str] | None = None

    @property
    def ok(self) -> bool:
        return self.status == 200

    @property
    def error_message(self) -> str:
        """Upstream error message from the body, or "Unknown error"."""
        if isinstance(self.body, dict):
            error = self.body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        return "Unknown error"


# ── Parsing ────────────────────────────────────────────────────────────────────


def _parse_recipients(raw: Any) -> list[Recipient]:
    if not isinstance(raw, list):
        return []
    recipients = []
    for item in raw:
        address = (item or {}).get("emailAddress") or {}
        if address.get("address"):
            recipients.append(Recipient(address=str(address["address"]), name=str(address.get("name") or "")))
    return recipients


def parse_message(data: dict[str, Any]) -> MailMessage:
    """Map a raw Graph message dict to a MailMessage."""
    sender = (data.get("from") or {}).get("emailAddress") or {}
    body = data.get("body") or {}
    return MailMessage(
        id=str(data.get("id", "")),
        subject=data.get("subject") or None,
        sender_name=sender.get("name") or None,
        sender_address=sender.get("address") or None,
        received_date_time=data.get("receivedDateTime") or None,
        body_preview=data.get("bodyPreview") or None,
        body=body.get("content") or None,
        body_type=body.get("contentType") or None,
        has_attachments=bool(data.get("hasAttachments", False)),
        importance=data.get("importance") or None,
        to=_parse_recipients(data.get("toRecipients")),
        cc=_parse_recipients(data.get("ccRecipients")),
    )


def parse_messages(raw: Any) -> list[MailMessage]:
    """Parse the ``value`` list of a ``/messages`` response (or batch body)."""
    values = raw.get("value", []) if isinstance(raw, dict) else []
    return [parse_message(m) for m in values if isinstance(m, dict)]
