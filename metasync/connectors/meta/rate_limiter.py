"""MetaSync - Rate Limiter & Batch Gateway.

Outbound calls pass through a concurrency gate that also spaces call starts.
Batchable GETs are grouped into Graph batch calls of up to 50 sub-requests;
each sub-request is retried on its own when throttled, so one noisy form or
account never fails the rest of the batch.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from metasync.config import settings
from metasync.connectors.meta.client import MetaClient, backoff_delay
from metasync.core.errors import (
    ExpiredCredentialError,
    MetaAPIError,
    TransientUpstreamError,
    classify_graph_error,
)
from metasync.core.logging import get_logger

logger = get_logger("meta.gateway")

T = TypeVar("T")


class RateLimiter:
    """Bounds simultaneous physical calls and spaces their start times."""

    def __init__(
        self,
        max_concurrency: int = settings.gateway_max_concurrency,
        min_spacing: float = settings.gateway_min_spacing_seconds,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_concurrency = max(1, max_concurrency)
        self.min_spacing = max(0.0, min_spacing)
        self._clock = clock
        self._sleep = sleep
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._spacing_lock: Optional[asyncio.Lock] = None
        self._last_start: Optional[float] = None
        self.in_flight = 0
        self.peak_in_flight = 0

    def _primitives(self) -> tuple[asyncio.Semaphore, asyncio.Lock]:
        # Created lazily so they bind to the running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
            self._spacing_lock = asyncio.Lock()
        return self._semaphore, self._spacing_lock

    async def _wait_for_slot(self, lock: asyncio.Lock) -> None:
        async with lock:
            if self._last_start is not None and self.min_spacing:
                wait = self._last_start + self.min_spacing - self._clock()
                if wait > 0:
                    await self._sleep(wait)
            self._last_start = self._clock()

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task()`` once a slot is free and spacing allows."""
        semaphore, lock = self._primitives()
        async with semaphore:
            await self._wait_for_slot(lock)
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return await task()
            finally:
                self.in_flight -= 1


@dataclass
class BatchRequest:
    relative_url: str
    method: str = "GET"
    key: Any = None

    def to_graph(self) -> Dict[str, str]:
        return {"method": self.method, "relative_url": self.relative_url}


@dataclass
class BatchResponse:
    request: BatchRequest
    status_code: int = 0
    body: Any = None
    error: Optional[MetaAPIError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _Pending:
    index: int
    request: BatchRequest
    attempts: int = 0
    last_error: Optional[MetaAPIError] = field(default=None)


def _parse_item(item: Any) -> tuple[int, Any]:
    if not isinstance(item, dict):
        # Graph returns null for sub-requests that timed out server-side
        return 0, None
    code = int(item.get("code") or 0)
    raw = item.get("body")
    if isinstance(raw, str):
        try:
            return code, json.loads(raw)
        except ValueError:
            return code, {"error": {"message": raw}}
    return code, raw


class BatchGateway:
    """Groups logical requests into bounded Graph batch calls."""

    def __init__(
        self,
        client: MetaClient,
        limiter: Optional[RateLimiter] = None,
        max_batch_size: int = settings.batch_max_size,
        max_retries: int = settings.gateway_max_retries,
    ):
        self.client = client
        self.limiter = limiter or client.limiter or RateLimiter()
        if client.limiter is None:
            client.limiter = self.limiter
        self.max_batch_size = max(1, min(max_batch_size, 50))
        self.max_retries = max_retries

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run a non-batchable call under the shared concurrency gate."""
        return await self.limiter.schedule(task)

    def _chunks(self, items: Sequence[_Pending]) -> List[List[_Pending]]:
        size = self.max_batch_size
        return [list(items[i : i + size]) for i in range(0, len(items), size)]

    async def _post_chunk(
        self, chunk: List[_Pending], access_token: Optional[str]
    ) -> List[Any]:
        payload = [p.request.to_graph() for p in chunk]
        items = await self.client.post_batch(payload, access_token=access_token)
        if len(items) != len(chunk):
            raise MetaAPIError(
                f"Unexpected batch response shape (expected {len(chunk)} items, got {len(items)})"
            )
        return items

    async def submit_batch(
        self,
        requests: Sequence[BatchRequest],
        access_token: Optional[str] = None,
    ) -> List[BatchResponse]:
        """Execute ``requests``; responses come back in request order.

        Throttled sub-requests are retried up to ``max_retries`` times and then
        returned with ``error`` set. An expired credential aborts the call without
        further retries; every response completed in that round rides along on
        the exception as ``partial``.
        """
        results: List[Optional[BatchResponse]] = [None] * len(requests)
        pending = [_Pending(i, r) for i, r in enumerate(requests)]

        while pending:
            chunks = self._chunks(pending)
            outcomes = await asyncio.gather(
                *(self._post_chunk(c, access_token) for c in chunks),
                return_exceptions=True,
            )
            retry: List[_Pending] = []
            expired: Optional[ExpiredCredentialError] = None
            for chunk, outcome in zip(chunks, outcomes):
                if isinstance(outcome, ExpiredCredentialError):
                    expired = expired or outcome
                    continue
                if isinstance(outcome, MetaAPIError):
                    logger.warning(f"Batch call failed for {len(chunk)} sub-requests: {outcome}")
                    for p in chunk:
                        results[p.index] = BatchResponse(
                            p.request, outcome.status_code, None, outcome, p.attempts + 1
                        )
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome

                for p, item in zip(chunk, outcome):
                    code, body = _parse_item(item)
                    has_error = isinstance(body, dict) and isinstance(body.get("error"), dict)
                    if code == 200 and not has_error:
                        results[p.index] = BatchResponse(p.request, code, body, None, p.attempts + 1)
                        continue

                    error = (
                        classify_graph_error(code, body)
                        if body is not None
                        else TransientUpstreamError("Sub-request timed out", code)
                    )
                    if isinstance(error, ExpiredCredentialError):
                        expired = expired or error
                        continue
                    if isinstance(error, TransientUpstreamError) and p.attempts < self.max_retries:
                        p.attempts += 1
                        p.last_error = error
                        retry.append(p)
                        continue
                    if isinstance(error, TransientUpstreamError):
                        logger.warning(
                            f"Giving up on {p.request.relative_url.split('?')[0]} "
                            f"after {p.attempts} retries: {error}",
                            extra={"error_code": error.error_code},
                        )
                    results[p.index] = BatchResponse(p.request, code, body, error, p.attempts + 1)

            if expired is not None:
                # Every other outcome of this round is recorded first
                expired.partial = [r for r in results if r is not None]
                raise expired

            if retry:
                wait = backoff_delay(max(p.attempts for p in retry) - 1)
                logger.warning(
                    f"Throttled on {len(retry)} sub-requests; retrying in {wait:.2f}s"
                )
                await self.client.sleep(wait)
            pending = retry

        return [r for r in results if r is not None]
