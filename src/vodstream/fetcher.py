"""Ordered segment retrieval with a bounded prefetch window."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .downloader import HttpClient, get_with_retry
from .errors import SegmentUnavailable, TransportError
from .models import Segment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchedSegment:
    """Raw bytes of a segment, delivered in list order."""

    segment: Segment
    data: bytes


class SegmentFetcher:
    """Pull-based fetcher over an ordered segment list.

    Up to ``window`` fetches run ahead of the consumer. Results are handed
    out strictly in list order; segments that complete early wait in the
    window until they are due.

    ``resume_after`` is a segment sequence number: segments at or below it
    are never fetched, including ones appended later by :meth:`extend`.
    """

    def __init__(
        self,
        client: HttpClient,
        segments: Iterable[Segment],
        *,
        window: int = 3,
        max_retries: int = 3,
        backoff: float = 0.5,
        resume_after: Optional[int] = None,
    ) -> None:
        if window < 1:
            raise ValueError("window must be at least 1")
        self._client = client
        self._segments: List[Segment] = list(segments)
        self._window = window
        self._max_retries = max_retries
        self._backoff = backoff
        self._resume_after = resume_after
        self._position = 0
        self._pending: Dict[int, asyncio.Task] = {}
        self._closed = False
        self._skip_delivered()

    @property
    def position(self) -> int:
        """Index of the next segment to be delivered."""
        return self._position

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    @property
    def last_known(self) -> Optional[Segment]:
        return self._segments[-1] if self._segments else None

    @property
    def exhausted(self) -> bool:
        return self._position >= len(self._segments)

    def extend(self, segments: Iterable[Segment]) -> int:
        """Append newly discovered segments; returns how many were added."""
        last = self.last_known
        fresh = [s for s in segments if last is None or s.sequence > last.sequence]
        self._segments.extend(fresh)
        self._skip_delivered()
        if fresh and not self._closed:
            self._fill_window()
        return len(fresh)

    async def restart(self, resume_after: Optional[int]) -> None:
        """Drop outstanding prefetches and continue after sequence ``resume_after``.

        ``None`` starts over from the first known segment.
        """
        await self._cancel_pending()
        self._resume_after = resume_after
        self._position = 0
        self._skip_delivered()

    async def next_segment(self) -> Optional[FetchedSegment]:
        """Return the next segment, or ``None`` once the known list is exhausted."""
        if self._closed or self.exhausted:
            return None

        self._fill_window()
        position = self._position
        task = self._pending[position]
        try:
            data = await task
        finally:
            if task.done():
                self._pending.pop(position, None)

        self._position += 1
        self._fill_window()
        return FetchedSegment(segment=self._segments[position], data=data)

    def __aiter__(self):
        return self

    async def __anext__(self) -> FetchedSegment:
        item = await self.next_segment()
        if item is None:
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Cancel every outstanding fetch."""
        self._closed = True
        await self._cancel_pending()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _skip_delivered(self) -> None:
        if self._resume_after is None:
            return
        while (
            self._position < len(self._segments)
            and self._segments[self._position].sequence <= self._resume_after
        ):
            self._position += 1

    def _fill_window(self) -> None:
        upper = min(self._position + self._window, len(self._segments))
        for index in range(self._position, upper):
            if index not in self._pending:
                segment = self._segments[index]
                self._pending[index] = asyncio.create_task(
                    self._fetch_with_retry(segment), name=f"segment-{segment.sequence}"
                )

    async def _cancel_pending(self) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.debug("Cancelled %d in-flight segment fetches", len(pending))

    async def _fetch_with_retry(self, segment: Segment) -> bytes:
        try:
            response = await get_with_retry(
                self._client,
                segment.url,
                byte_range=segment.byte_range,
                max_retries=self._max_retries,
                backoff=self._backoff,
                label=f"segment {segment.sequence}",
            )
        except TransportError as exc:
            raise SegmentUnavailable(segment.sequence, segment.url) from exc
        return response.body
