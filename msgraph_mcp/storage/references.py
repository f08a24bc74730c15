"""Opaque resource references — the URI strings clients store and replay to drill down.

Two formats, reproduced exactly:

    copilot://search-<searchId>/result-<index>
    attachment://<messageId>:<attachmentId>
"""

import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

SEARCH_SCHEME = "copilot"
ATTACHMENT_SCHEME = "attachment"

_SEARCH_PATH_RE = re.compile(r"^search-(?P<handle>[^/]+)/result-(?P<index>\d+)$")


class MalformedReferenceError(ValueError):
    """The reference string could not be parsed — a client bug, not an expiry."""


@dataclass(frozen=True)
class SearchReference:
    search_id: str
    index: int


@dataclass(frozen=True)
class AttachmentReference:
    message_id: str
    attachment_id: str

    @property
    def handle(self) -> str:
        return attachment_handle(self.message_id, self.attachment_id)


Reference = SearchReference | AttachmentReference


def attachment_handle(message_id: str, attachment_id: str) -> str:
    """Deterministic cache handle for an attachment: ``messageId:attachmentId``."""
    return f"{message_id}:{attachment_id}"


def format_search_reference(search_id: str, index: int) -> str:
    return f"{SEARCH_SCHEME}://search-{search_id}/result-{index}"


def format_attachment_reference(message_id: str, attachment_id: str) -> str:
    return f"{ATTACHMENT_SCHEME}://{attachment_handle(message_id, attachment_id)}"


def parse_reference(uri: str) -> Reference:
    """Parse a reference string, accepting percent-encoded handles.

    Raises:
        MalformedReferenceError: for unknown schemes or malformed paths.
    """
    scheme, sep, rest = str(uri).strip().partition("://")
    if not sep or not rest:
        raise MalformedReferenceError(f"Not a resource reference: {uri!r}")

    if scheme == SEARCH_SCHEME:
        match = _SEARCH_PATH_RE.match(rest)
        if match is None:
            raise MalformedReferenceError(
                f"Malformed search reference {uri!r}; expected "
                f"{SEARCH_SCHEME}://search-<searchId>/result-<index>"
            )
        return SearchReference(search_id=unquote(match["handle"]), index=int(match["index"]))

    if scheme == ATTACHMENT_SCHEME:
        message_id, colon, attachment_id = unquote(rest.rstrip("/")).partition(":")
        if not colon or not message_id or not attachment_id:
            raise MalformedReferenceError(
                f"Malformed attachment reference {uri!r}; expected "
                f"{ATTACHMENT_SCHEME}://<messageId>:<attachmentId>"
            )
        return AttachmentReference(message_id=message_id, attachment_id=attachment_id)

    raise MalformedReferenceError(f"Unknown reference scheme {scheme!r} in {uri!r}")


def to_protocol_uri(reference: str) -> str:
    """Percent-encode the handle so URL parsers keep it intact.

    ``attachment://msg:att`` would otherwise read as host ``msg`` with port
    ``att``.  `parse_reference` accepts both the raw and the encoded form.
    """
    scheme, sep, rest = reference.partition("://")
    if scheme != ATTACHMENT_SCHEME or not sep:
        return reference
    return f"{scheme}://{quote(rest, safe='')}"
