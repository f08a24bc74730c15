"""Content search tool — Copilot retrieval across SharePoint, OneDrive, and connectors."""

import logging
from typing import Any

from msgraph_mcp.graph.client import GraphClient
from msgraph_mcp.processing.preview import build_preview, log_result_stats, rank_hits
from msgraph_mcp.processing.summarizer import summarize_hit
from msgraph_mcp.storage.cache import ResultCache

logger = logging.getLogger(__name__)

DATA_SOURCES = ("sharePoint", "oneDriveBusiness", "externalItem")

INSTRUCTION = (
    "Results show brief excerpts only. Read a result's resourceUri to get every "
    "extract with its score, the full metadata, and the sensitivity label."
)


class CopilotTools:
    def __init__(self, client: GraphClient, cache: ResultCache) -> None:
        self._client = client
        self._cache = cache

    async def search_content(
        self,
        query: str,
        data_source: str = "sharePoint",
        filter_expression: str | None = None,
        max_results: int = 10,
        include_metadata: bool = False,
    ) -> dict[str, Any]:
        """Search, cache the full hits under a fresh handle, and return briefs.

        Hits are ranked by relevance before caching, so ``result-<i>`` in a
        brief and index ``i`` in the cache name the same hit.
        """
        hits = rank_hits(
            await self._client.copilot_retrieval(
                query,
                data_source=data_source,
                filter_expression=filter_expression,
                max_results=max_results,
                include_metadata=include_metadata,
            )
        )

        search_id = self._cache.generate_search_id()
        self._cache.set_search(search_id, query, hits)
        briefs = build_preview(hits, lambda hit, index: summarize_hit(hit, index, search_id))

        if hits:
            average = sum(h.top_score for h in hits) / len(hits)
            labelled = sum(1 for h in hits if h.sensitivity_label)
            logger.info(
                "Content search %s: %d result(s), avg relevance %.2f, %d with sensitivity labels",
                search_id, len(hits), average, labelled,
            )
        else:
            logger.info("No content results for %r", query)

        result = {
            "searchId": search_id,
            "query": query,
            "dataSource": data_source,
            "totalResults": len(hits),
            "results": [b.to_dict() for b in briefs],
            "instruction": INSTRUCTION,
        }
        log_result_stats(result, "Content search")
        return result
