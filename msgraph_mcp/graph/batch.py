"""Batch dispatcher — chunks logical requests into ``$batch`` calls and reassembles outcomes."""

import logging
from collections.abc import Awaitable, Callable, Sequence

from msgraph_mcp.graph.auth import AuthError
from msgraph_mcp.graph.types import BatchRequest, BatchResponse

logger = logging.getLogger(__name__)

#: Graph rejects ``$batch`` payloads with more than 20 requests.
MAX_BATCH_SIZE = 20

_NO_RESPONSE_STATUS = 502
_CHUNK_FAILURE_STATUS = 500

#: Sends one physical batch and returns whatever responses came back.
BatchSender = Callable[[list[BatchRequest]], Awaitable[list[BatchResponse]]]


def chunk(requests: Sequence[BatchRequest], size: int) -> list[list[BatchRequest]]:
    """Split requests into consecutive lists of at most `size` items."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    return [list(requests[i:i + size]) for i in range(0, len(requests), size)]


def _synthesized(request_id: str, status: int, message: str) -> BatchResponse:
    return BatchResponse(id=request_id, status=status, body={"error": {"message": message}})


class BatchDispatcher:
    """Issues logical requests through a batch endpoint, one chunk at a time.

    Chunks are sent sequentially, never concurrently, so a large fan-out
    stays under Graph's per-second batch rate limit.  ``dispatch`` never
    raises for upstream failures:

    - a chunk whose call fails entirely gets a synthesized 500 outcome for
      every request in it;
    - a request the upstream silently dropped gets a synthesized 502;
    - per-item statuses (200, 429, 404, ...) are preserved as returned.

    Only ``AuthError`` escapes, since retrying without a credential is pointless.

    Usage::

        dispatcher = BatchDispatcher(graph_client.post_batch)
        outcomes = await dispatcher.dispatch(requests)
        outcomes["0"].status
    """

    def __init__(self, send: BatchSender, max_batch_size: int = MAX_BATCH_SIZE) -> None:
        if not 1 <= max_batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"max_batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self._send = send
        self._max_batch_size = max_batch_size

    async def dispatch(self, requests: Sequence[BatchRequest]) -> dict[str, BatchResponse]:
        """Return exactly one outcome per request id, in input order.

        Raises:
            ValueError: if two requests share an id.
            AuthError: if the credential provider fails.
        """
        ids = [r.id for r in requests]
        if len(set(ids)) != len(ids):
            raise ValueError("Batch request ids must be unique")

        outcomes: dict[str, BatchResponse] = {}
        for index, part in enumerate(chunk(requests, self._max_batch_size)):
            logger.debug("Executing batch chunk %d with %d request(s)", index, len(part))
            outcomes.update(await self._dispatch_chunk(part))

        return {request_id: outcomes[request_id] for request_id in ids}

    async def _dispatch_chunk(self, part: list[BatchRequest]) -> dict[str, BatchResponse]:
        try:
            responses = await self._send(part)
        except AuthError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Batch chunk of %d request(s) failed: %s", len(part), exc)
            return {
                r.id: _synthesized(r.id, _CHUNK_FAILURE_STATUS, f"Batch request failed: {exc}")
                for r in part
            }

        wanted = {r.id for r in part}
        received = {resp.id: resp for resp in responses if resp.id in wanted}
        missing = [r.id for r in part if r.id not in received]
        if missing:
            logger.warning("Batch returned no response for %d request(s): %s", len(missing), missing)
        for request_id in missing:
            received[request_id] = _synthesized(
                request_id, _NO_RESPONSE_STATUS, "No response from server"
            )
        return received
