"""Drill-down resolver — turns an opaque reference back into full cached content.

Two failure modes stay distinct so callers can tell them apart:

- MalformedReferenceError: the string never was a valid reference.
- ReferenceExpiredError: it was valid, but the entry has expired or been
  evicted; re-running the original query produces a fresh one.
"""

import json
import logging
from dataclasses import dataclass

from msgraph_mcp.graph.types import Attachment, MailMessage, RawRecord, RetrievalHit
from msgraph_mcp.processing.summarizer import full_hit_view, full_message_view, hit_title, summarize
from msgraph_mcp.storage import references
from msgraph_mcp.storage.cache import ResultCache
from msgraph_mcp.storage.references import (
    AttachmentReference,
    SearchReference,
    format_attachment_reference,
    format_search_reference,
    parse_reference,
)

logger = logging.getLogger(__name__)

JSON_MIME_TYPE = "application/json"


class ResourceError(Exception):
    """Base class for drill-down failures."""


class MalformedReferenceError(ResourceError, references.MalformedReferenceError):
    """The reference could not be parsed."""


class ReferenceExpiredError(ResourceError):
    """The reference parsed, but nothing is cached under it any more."""

    def __init__(self, uri: str, kind: str) -> None:
        super().__init__(
            f"{kind} not found or expired: {uri}. "
            "Cached results expire after a while; re-run the original query to get a fresh reference."
        )
        self.uri = uri


@dataclass(frozen=True)
class ResolvedContent:
    """Full content behind a reference: JSON text, or raw bytes."""

    uri: str
    mime_type: str
    text: str | None = None
    blob: bytes | None = None


@dataclass(frozen=True)
class ResourceDescriptor:
    """One discoverable reference, for resource listings."""

    uri: str
    name: str
    description: str
    mime_type: str


def full_view(record: RawRecord) -> dict:
    """Full drill-down view of any cached record kind."""
    if isinstance(record, RetrievalHit):
        return full_hit_view(record)
    if isinstance(record, MailMessage):
        return full_message_view(record)
    return summarize(record).to_dict()


def _record_name(record: RawRecord) -> str:
    if isinstance(record, RetrievalHit):
        return hit_title(record)
    if isinstance(record, MailMessage):
        return record.subject or "(No subject)"
    if isinstance(record, Attachment):
        return record.name
    return "result"


class DrillDownResolver:
    """Resolves references against a ResultCache and enumerates live ones."""

    def __init__(self, cache: ResultCache) -> None:
        self._cache = cache

    def resolve(self, uri: str) -> ResolvedContent:
        """Return the full content behind `uri`.

        Raises:
            MalformedReferenceError: `uri` is not a valid reference.
            ReferenceExpiredError: `uri` is valid but no longer cached.
        """
        try:
            reference = parse_reference(uri)
        except references.MalformedReferenceError as exc:
            raise MalformedReferenceError(str(exc)) from exc

        if isinstance(reference, SearchReference):
            record = self._cache.get_result(reference.search_id, reference.index)
            if record is None:
                logger.debug("Search reference miss: %s", uri)
                raise ReferenceExpiredError(uri, "Search result")
            return ResolvedContent(
                uri=uri,
                mime_type=JSON_MIME_TYPE,
                text=json.dumps(full_view(record), indent=2),
            )

        return self._resolve_attachment(uri, reference)

    def _resolve_attachment(self, uri: str, reference: AttachmentReference) -> ResolvedContent:
        cached = self._cache.get_attachment(reference.handle)
        if cached is None:
            logger.debug("Attachment reference miss: %s", uri)
            raise ReferenceExpiredError(uri, "Attachment")
        return ResolvedContent(uri=uri, mime_type=cached.content_type, blob=cached.content)

    def list_resources(self) -> list[ResourceDescriptor]:
        """One descriptor per live search result and per live attachment."""
        descriptors: list[ResourceDescriptor] = []
        for entry in self._cache.list_searches():
            for index, record in enumerate(entry.records):
                descriptors.append(
                    ResourceDescriptor(
                        uri=format_search_reference(entry.search_id, index),
                        name=_record_name(record),
                        description=f"Result {index + 1} for: {entry.query}",
                        mime_type=JSON_MIME_TYPE,
                    )
                )
        for cached in self._cache.list_attachments():
            descriptors.append(
                ResourceDescriptor(
                    uri=format_attachment_reference(cached.message_id, cached.attachment_id),
                    name=cached.name,
                    description=f"Attachment from message {cached.message_id} ({cached.size} bytes)",
                    mime_type=cached.content_type,
                )
            )
        return descriptors
