"""Response budget enforcement — ordered, truncated previews that fit a token budget.

Nothing here checks byte counts at runtime.  The budget holds because every
summary has a fixed shape with a capped excerpt, and every list is capped:
the worst case is ``entities × per_entity_limit × EXCERPT_CHAR_LIMIT``.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from msgraph_mcp.graph.types import BatchResponse, MailMessage, RetrievalHit, parse_messages
from msgraph_mcp.processing.summarizer import EmailSummary, summarize_message

logger = logging.getLogger(__name__)

R = TypeVar("R")
S = TypeVar("S")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class EntitySearchResult:
    """Per-entity result of a batch search.

    ``match_count`` counts every message upstream returned, even when
    ``emails`` was truncated to the per-entity limit.
    """

    match_count: int
    emails: list[EmailSummary] = field(default_factory=list)
    latest_date: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "matchCount": self.match_count,
            "emails": [e.to_dict() for e in self.emails],
        }
        if self.latest_date:
            data["latestDate"] = self.latest_date
        if self.error:
            data["error"] = self.error
        return data


# ── Ordering keys ──────────────────────────────────────────────────────────────


def parse_timestamp(value: str | None) -> datetime:
    """Parse an ISO 8601 timestamp; unparseable or missing values sort oldest."""
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def by_recency(summary: EmailSummary) -> datetime:
    return parse_timestamp(summary.received_date_time)


def by_relevance(hit: RetrievalHit) -> float:
    return hit.top_score


def rank_hits(hits: Sequence[RetrievalHit]) -> list[RetrievalHit]:
    """Hits by descending relevance; ties keep their upstream order."""
    return sorted(hits, key=by_relevance, reverse=True)


# ── Budget enforcement ─────────────────────────────────────────────────────────


def build_preview(
    records: Sequence[R],
    summarizer: Callable[[R, int], S],
    limit: int | None = None,
    sort_key: Callable[[S], Any] | None = None,
    descending: bool = True,
) -> list[S]:
    """Summarize each record, optionally sort the summaries, then truncate.

    `summarizer` receives each record with its position in `records`, so
    summaries can carry a reference back to the stored original.  The sort
    is stable, so records with equal keys keep their upstream order.
    """
    summaries = [summarizer(record, index) for index, record in enumerate(records)]
    if sort_key is not None:
        summaries.sort(key=sort_key, reverse=descending)
    if limit is not None:
        summaries = summaries[: max(limit, 0)]
    return summaries


def summarize_messages(messages: Sequence[MailMessage], limit: int | None = None) -> list[EmailSummary]:
    """Email summaries, newest first, truncated to `limit`."""
    return build_preview(
        messages, lambda message, _index: summarize_message(message), limit, sort_key=by_recency
    )


def latest_date(summaries: Sequence[EmailSummary]) -> str | None:
    """The newest receivedDateTime among `summaries`, or None when empty."""
    if not summaries:
        return None
    return max(summaries, key=by_recency).received_date_time or None


def entity_result(messages: Sequence[MailMessage], per_entity_limit: int) -> EntitySearchResult:
    """Bounded result for one entity; zero messages is a zero-count result."""
    ordered = summarize_messages(messages)
    return EntitySearchResult(
        match_count=len(messages),
        emails=ordered[: max(per_entity_limit, 0)],
        latest_date=latest_date(ordered),
    )


def build_entity_previews(
    outcomes: Mapping[str, BatchResponse],
    entities: Sequence[str],
    per_entity_limit: int,
    total_limit: int | None = None,
) -> dict[str, EntitySearchResult]:
    """One EntitySearchResult per entity, in entity order, never omitting one.

    ``outcomes`` is keyed by the entity's position (as a string), matching
    the ids the batch requests were built with.  Failed outcomes become an
    error result with a zero match count.  `total_limit`, when given, caps
    the number of email summaries across all entities; entities past the
    cap keep their match count but carry no emails.
    """
    results: dict[str, EntitySearchResult] = {}
    remaining = total_limit
    for index, entity in enumerate(entities):
        outcome = outcomes.get(str(index))
        if outcome is None:
            results[entity] = EntitySearchResult(match_count=0, error="No response from server")
            continue
        if not outcome.ok:
            results[entity] = EntitySearchResult(
                match_count=0, error=f"Error {outcome.status}: {outcome.error_message}"
            )
            continue

        result = entity_result(parse_messages(outcome.body), per_entity_limit)
        if remaining is not None:
            kept = result.emails[: max(remaining, 0)]
            remaining -= len(kept)
            result = EntitySearchResult(
                match_count=result.match_count, emails=kept, latest_date=result.latest_date
            )
        results[entity] = result
    return results


# ── Token accounting ───────────────────────────────────────────────────────────


def to_jsonable(result: Any) -> Any:
    """Convert summaries (and lists/dicts of them) to plain JSON-ready values."""
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, Mapping):
        return {str(k): to_jsonable(v) for k, v in result.items()}
    if isinstance(result, (list, tuple)):
        return [to_jsonable(v) for v in result]
    return result


def estimate_tokens(result: Any) -> int:
    """Rough token count: one token per four characters of compact JSON."""
    text = json.dumps(to_jsonable(result), separators=(",", ":"), default=str)
    return math.ceil(len(text) / 4)


def log_result_stats(result: Any, label: str = "Result") -> int:
    tokens = estimate_tokens(result)
    logger.debug("%s: ~%d tokens", label, tokens)
    return tokens
