"""Shared pytest fixtures."""

import pytest

from msgraph_mcp.config import CacheConfig
from msgraph_mcp.storage.cache import ResultCache


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock):
    """ResultCache on the fake clock, with no background sweeper."""
    c = ResultCache(CacheConfig(ttl_ms=60_000, max_entries=5, sweep_interval_ms=0), clock=clock)
    yield c
    c.close()


@pytest.fixture
def sample_graph_message() -> dict:
    """A raw Graph message as returned by ``/messages`` with ``$select``."""
    return {
        "id": "AAMkAD-msg-001",
        "subject": "Renewal terms for Contoso",
        "from": {"emailAddress": {"name": "Alice Smith", "address": "alice@contoso.com"}},
        "receivedDateTime": "2026-02-27T09:00:00Z",
        "bodyPreview": "Hi, attached are the renewal terms we discussed on Tuesday.",
        "hasAttachments": True,
        "importance": "high",
    }
