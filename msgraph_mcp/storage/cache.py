"""Handle-indexed result cache — full results kept server-side behind short opaque handles.

Tools return small previews and stash the complete records here; clients
later resolve a handle to get the full content without re-running the
upstream query.  Two stores live side by side, sized independently:

- searches, keyed by a random handle (``<epoch-ms>-<7 base36 chars>``);
- attachments, keyed by the deterministic ``messageId:attachmentId``, so
  caching the same attachment twice yields the same handle.

Entries expire ``ttl_ms`` after insertion.  Expiry is checked lazily on
every read and actively by a periodic sweep; both go through
``HandleCache.is_expired`` so they can never disagree about liveness.
When a store is full, the entry with the oldest insertion time is evicted
(reads do not refresh an entry's position).
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from apscheduler.schedulers.background import BackgroundScheduler

from msgraph_mcp.config import CacheConfig
from msgraph_mcp.graph.types import RawRecord
from msgraph_mcp.storage.references import attachment_handle

logger = logging.getLogger(__name__)

_HANDLE_ALPHABET = string.ascii_lowercase + string.digits
_HANDLE_SUFFIX_LENGTH = 7

T = TypeVar("T")

#: Returns the current time in milliseconds.
Clock = Callable[[], float]


def _now_ms() -> float:
    return time.time() * 1000


# ── Entries ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SearchEntry:
    """A cached search: the query and every record it returned, in stored order."""

    search_id: str
    query: str
    records: list[RawRecord] = field(default_factory=list)


@dataclass(frozen=True)
class CachedAttachment:
    """Decoded attachment bytes with the metadata needed to serve them."""

    message_id: str
    attachment_id: str
    name: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class _Slot(Generic[T]):
    value: T
    inserted_at: float
    sequence: int


@dataclass(frozen=True)
class CacheStats:
    search_entries: int
    total_results: int
    attachment_entries: int
    attachment_bytes: int

    def to_dict(self) -> dict[str, int]:
        return {
            "searchEntries": self.search_entries,
            "totalResults": self.total_results,
            "attachmentEntries": self.attachment_entries,
            "attachmentBytes": self.attachment_bytes,
        }


# ── Generic store ──────────────────────────────────────────────────────────────


class HandleCache(Generic[T]):
    """Capacity- and TTL-bounded map from handle to an immutable value.

    Absence is never an error: lookups return None and removals return
    False.  All mutation happens under a re-entrant lock because the sweep
    runs on a scheduler thread.
    """

    def __init__(self, ttl_ms: int, max_entries: int, clock: Clock = _now_ms, name: str = "cache") -> None:
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms}")
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self._ttl_ms = ttl_ms
        self._max_entries = max_entries
        self._clock = clock
        self._name = name
        self._slots: dict[str, _Slot[T]] = {}
        self._sequence = 0
        self._lock = threading.RLock()

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, handle: object) -> bool:
        return isinstance(handle, str) and self.get(handle) is not None

    def is_expired(self, inserted_at: float, now: float) -> bool:
        """The one liveness predicate shared by reads, listing, and the sweep."""
        return now - inserted_at > self._ttl_ms

    def put(self, handle: str, value: T) -> None:
        """Store `value` under `handle`, evicting the oldest entry if full.

        Re-putting a live handle replaces that entry in place of evicting
        another one.
        """
        with self._lock:
            if handle in self._slots:
                del self._slots[handle]
            elif len(self._slots) >= self._max_entries:
                self._evict_oldest()
            self._sequence += 1
            self._slots[handle] = _Slot(value, self._clock(), self._sequence)
            logger.debug("%s: stored %s (%d/%d)", self._name, handle, len(self._slots), self._max_entries)

    def get(self, handle: str) -> T | None:
        """Return the live value for `handle`, removing it first if expired."""
        with self._lock:
            slot = self._slots.get(handle)
            if slot is None:
                return None
            if self.is_expired(slot.inserted_at, self._clock()):
                del self._slots[handle]
                logger.debug("%s: %s expired, removed", self._name, handle)
                return None
            return slot.value

    def remove(self, handle: str) -> bool:
        """Drop `handle`; True only if something was actually removed."""
        with self._lock:
            return self._slots.pop(handle, None) is not None

    def handles(self) -> list[str]:
        """Live handles in insertion order, excluding logically expired ones."""
        with self._lock:
            now = self._clock()
            return [h for h, slot in self._slots.items() if not self.is_expired(slot.inserted_at, now)]

    def values(self) -> list[T]:
        with self._lock:
            now = self._clock()
            return [s.value for s in self._slots.values() if not self.is_expired(s.inserted_at, now)]

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()

    def sweep(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [h for h, slot in self._slots.items() if self.is_expired(slot.inserted_at, now)]
            for handle in expired:
                del self._slots[handle]
        if expired:
            logger.debug("%s: swept %d expired entr%s", self._name, len(expired), "y" if len(expired) == 1 else "ies")
        return len(expired)

    def _evict_oldest(self) -> None:
        oldest = min(self._slots.items(), key=lambda item: (item[1].inserted_at, item[1].sequence))[0]
        del self._slots[oldest]
        logger.debug("%s: evicted oldest entry %s", self._name, oldest)


# ── Result cache ───────────────────────────────────────────────────────────────


class ResultCache:
    """Search and attachment stores plus the background sweep that prunes them.

    The sweeper starts at construction when ``config.sweep_interval_ms`` is
    positive and runs for the life of the process; ``close()`` stops it for
    tests and other short-lived embeddings.

    Usage::

        cache = ResultCache(CacheConfig.from_env())
        search_id = cache.generate_search_id()
        cache.set_search(search_id, query, hits)
        hit = cache.get_result(search_id, 2)
    """

    def __init__(self, config: CacheConfig | None = None, clock: Clock = _now_ms) -> None:
        config = config or CacheConfig()
        self._clock = clock
        self._searches: HandleCache[SearchEntry] = HandleCache(
            config.ttl_ms, config.max_entries, clock, name="search-cache"
        )
        self._attachments: HandleCache[CachedAttachment] = HandleCache(
            config.ttl_ms, config.max_attachment_entries, clock, name="attachment-cache"
        )
        self._scheduler: BackgroundScheduler | None = None
        if config.sweep_interval_ms > 0:
            self._start_sweeper(config.sweep_interval_ms)

    # ── Handles ────────────────────────────────────────────────────────────────

    def generate_search_id(self) -> str:
        """A fresh random handle, never equal to a live search handle."""
        while True:
            suffix = "".join(secrets.choice(_HANDLE_ALPHABET) for _ in range(_HANDLE_SUFFIX_LENGTH))
            search_id = f"{int(self._clock())}-{suffix}"
            if self._searches.get(search_id) is None:
                return search_id

    @staticmethod
    def generate_attachment_id(message_id: str, attachment_id: str) -> str:
        return attachment_handle(message_id, attachment_id)

    # ── Searches ───────────────────────────────────────────────────────────────

    def set_search(self, search_id: str, query: str, records: list[RawRecord]) -> None:
        self._searches.put(search_id, SearchEntry(search_id, query, list(records)))
        logger.debug("Cached search %s with %d result(s)", search_id, len(records))

    def get_search(self, search_id: str) -> SearchEntry | None:
        return self._searches.get(search_id)

    def get_result(self, search_id: str, index: int) -> RawRecord | None:
        """One stored record; an out-of-range index is a miss, not an error."""
        entry = self._searches.get(search_id)
        if entry is None or not 0 <= index < len(entry.records):
            return None
        return entry.records[index]

    def list_search_ids(self) -> list[str]:
        return self._searches.handles()

    def list_searches(self) -> list[SearchEntry]:
        return self._searches.values()

    def clear_search(self, search_id: str) -> bool:
        return self._searches.remove(search_id)

    # ── Attachments ────────────────────────────────────────────────────────────

    def set_attachment(self, message_id: str, attachment_id: str, name: str, content_type: str, content: bytes) -> str:
        """Cache attachment bytes and return the deterministic handle."""
        handle = self.generate_attachment_id(message_id, attachment_id)
        self._attachments.put(
            handle, CachedAttachment(message_id, attachment_id, name, content_type, content)
        )
        logger.debug("Cached attachment %s (%d bytes)", handle, len(content))
        return handle

    def get_attachment(self, handle: str) -> CachedAttachment | None:
        return self._attachments.get(handle)

    def list_attachment_ids(self) -> list[str]:
        return self._attachments.handles()

    def list_attachments(self) -> list[CachedAttachment]:
        return self._attachments.values()

    def clear_attachment(self, handle: str) -> bool:
        return self._attachments.remove(handle)

    # ── Maintenance ────────────────────────────────────────────────────────────

    def clear_all(self) -> None:
        self._searches.clear()
        self._attachments.clear()
        logger.info("Cleared all cached results")

    def cleanup_expired(self) -> int:
        """Run one active-expiry pass over both stores."""
        return self._searches.sweep() + self._attachments.sweep()

    def stats(self) -> CacheStats:
        searches = self._searches.values()
        attachments = self._attachments.values()
        return CacheStats(
            search_entries=len(searches),
            total_results=sum(len(s.records) for s in searches),
            attachment_entries=len(attachments),
            attachment_bytes=sum(a.size for a in attachments),
        )

    @property
    def sweeper_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def close(self) -> None:
        """Stop the background sweeper.  Idempotent; the cache stays usable."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.debug("Cache sweeper stopped")
        self._scheduler = None

    def _start_sweeper(self, interval_ms: int) -> None:
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            self.cleanup_expired,
            "interval",
            seconds=interval_ms / 1000,
            id="result-cache-sweep",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.debug("Cache sweeper started (every %dms)", interval_ms)
