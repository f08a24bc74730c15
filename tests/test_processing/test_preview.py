"""Tests for the response budget enforcer — ordering, limits, and per-entity results."""

import json

from msgraph_mcp.graph.types import BatchResponse, MailMessage, RetrievalExtract, RetrievalHit
from msgraph_mcp.processing.preview import (
    EntitySearchResult,
    build_entity_previews,
    build_preview,
    entity_result,
    estimate_tokens,
    latest_date,
    log_result_stats,
    parse_timestamp,
    rank_hits,
    summarize_messages,
    to_jsonable,
)
from msgraph_mcp.processing.summarizer import summarize_message


def _message(msg_id: str, received: str | None) -> MailMessage:
    return MailMessage(id=msg_id, subject=f"Subject {msg_id}", received_date_time=received)


def _graph_message(msg_id: str, received: str) -> dict:
    return {
        "id": msg_id,
        "subject": f"Subject {msg_id}",
        "from": {"emailAddress": {"name": "Alice", "address": "alice@contoso.com"}},
        "receivedDateTime": received,
        "bodyPreview": "preview",
    }


def _hit(url: str, score: float) -> RetrievalHit:
    return RetrievalHit(web_url=url, resource_type="listItem", extracts=[RetrievalExtract("t", score)])


# ── build_preview ──────────────────────────────────────────────────────────────


class TestBuildPreview:
    def test_summarizer_receives_index(self) -> None:
        out = build_preview(["a", "b", "c"], lambda record, index: f"{index}:{record}")
        assert out == ["0:a", "1:b", "2:c"]

    def test_limit(self) -> None:
        assert build_preview([1, 2, 3, 4], lambda r, _i: r, limit=2) == [1, 2]

    def test_negative_limit_is_empty(self) -> None:
        assert build_preview([1, 2], lambda r, _i: r, limit=-1) == []

    def test_sorted_descending_before_truncation(self) -> None:
        out = build_preview([3, 9, 1, 7], lambda r, _i: r, limit=2, sort_key=lambda s: s)
        assert out == [9, 7]

    def test_ascending(self) -> None:
        out = build_preview([3, 9, 1], lambda r, _i: r, sort_key=lambda s: s, descending=False)
        assert out == [1, 3, 9]

    def test_empty(self) -> None:
        assert build_preview([], lambda r, _i: r, limit=5) == []


class TestOrdering:
    def test_summarize_messages_newest_first(self) -> None:
        messages = [
            _message("old", "2026-01-01T00:00:00Z"),
            _message("new", "2026-03-01T00:00:00Z"),
            _message("mid", "2026-02-01T00:00:00Z"),
        ]
        assert [s.message_id for s in summarize_messages(messages)] == ["new", "mid", "old"]

    def test_undated_messages_sort_last(self) -> None:
        messages = [_message("none", None), _message("bad", "not a date"), _message("ok", "2026-01-01T00:00:00Z")]
        assert summarize_messages(messages)[0].message_id == "ok"

    def test_parse_timestamp_handles_offsets(self) -> None:
        assert parse_timestamp("2026-01-01T10:00:00+02:00") < parse_timestamp("2026-01-01T09:00:00Z")

    def test_rank_hits_is_stable(self) -> None:
        hits = [_hit("a", 0.5), _hit("b", 0.9), _hit("c", 0.5)]
        assert [h.web_url for h in rank_hits(hits)] == ["b", "a", "c"]

    def test_latest_date(self) -> None:
        summaries = [summarize_message(_message("a", "2026-01-01T00:00:00Z")),
                     summarize_message(_message("b", "2026-02-01T00:00:00Z"))]
        assert latest_date(summaries) == "2026-02-01T00:00:00Z"
        assert latest_date([]) is None


# ── Entity results ─────────────────────────────────────────────────────────────


class TestEntityResult:
    def test_zero_matches_is_explicit(self) -> None:
        result = entity_result([], per_entity_limit=5)
        assert result.to_dict() == {"matchCount": 0, "emails": []}

    def test_match_count_counts_everything_returned(self) -> None:
        messages = [
            _message("a", "2026-01-01T00:00:00Z"),
            _message("b", "2026-03-01T00:00:00Z"),
            _message("c", "2026-02-01T00:00:00Z"),
        ]
        result = entity_result(messages, per_entity_limit=2)
        assert result.match_count == 3
        assert [e.message_id for e in result.emails] == ["b", "c"]
        assert result.latest_date == "2026-03-01T00:00:00Z"

    def test_error_result_shape(self) -> None:
        assert EntitySearchResult(match_count=0, error="boom").to_dict() == {
            "matchCount": 0,
            "emails": [],
            "error": "boom",
        }


class TestBuildEntityPreviews:
    def test_every_entity_present_with_mixed_outcomes(self) -> None:
        outcomes = {
            "0": BatchResponse(id="0", status=200, body={"value": [_graph_message("m1", "2026-01-01T00:00:00Z")]}),
            "1": BatchResponse(id="1", status=429, body={"error": {"message": "Too many requests"}}),
            "2": BatchResponse(id="2", status=200, body={"value": []}),
        }
        results = build_entity_previews(outcomes, ["Contoso", "Fabrikam", "Northwind", "Tailspin"], 5)

        assert list(results) == ["Contoso", "Fabrikam", "Northwind", "Tailspin"]
        assert results["Contoso"].match_count == 1
        assert results["Contoso"].emails[0].sender == "Alice"
        assert results["Fabrikam"].to_dict() == {
            "matchCount": 0,
            "emails": [],
            "error": "Error 429: Too many requests",
        }
        assert results["Northwind"].to_dict() == {"matchCount": 0, "emails": []}
        assert results["Tailspin"].error == "No response from server"

    def test_error_without_message(self) -> None:
        outcomes = {"0": BatchResponse(id="0", status=503, body=None)}
        assert build_entity_previews(outcomes, ["X"], 5)["X"].error == "Error 503: Unknown error"

    def test_total_limit_caps_emails_across_entities(self) -> None:
        body = {"value": [_graph_message(f"m{i}", f"2026-01-0{i + 1}T00:00:00Z") for i in range(3)]}
        outcomes = {str(i): BatchResponse(id=str(i), status=200, body=body) for i in range(3)}
        results = build_entity_previews(outcomes, ["A", "B", "C"], per_entity_limit=2, total_limit=3)
        assert [len(results[e].emails) for e in "ABC"] == [2, 1, 0]
        assert [results[e].match_count for e in "ABC"] == [3, 3, 3]


# ── Token accounting ───────────────────────────────────────────────────────────


class TestTokenEstimates:
    def test_estimate_is_quarter_of_compact_json(self) -> None:
        assert estimate_tokens({"a": "bbbb"}) == 3  # '{"a":"bbbb"}' is 12 chars

    def test_rounds_up(self) -> None:
        assert estimate_tokens({"a": "b"}) == 3  # 9 chars

    def test_to_jsonable_converts_summaries(self) -> None:
        data = to_jsonable({"X": entity_result([], 5)})
        assert json.loads(json.dumps(data)) == {"X": {"matchCount": 0, "emails": []}}

    def test_log_result_stats_returns_estimate(self) -> None:
        assert log_result_stats([1, 2, 3]) == estimate_tokens([1, 2, 3])
