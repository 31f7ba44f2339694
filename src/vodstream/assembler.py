"""Compose segment fetching and decryption into one ordered chunk stream."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from .decryptor import KeyCache, decrypt
from .downloader import HttpClient, get_with_retry
from .errors import (
    FetchError,
    ManifestUnavailable,
    ParseError,
    PlaybackError,
    SegmentUnavailable,
    TransportError,
)
from .fetcher import SegmentFetcher
from .manifest import ManifestLoader
from .models import DecryptedChunk, Manifest, RefreshPolicy, Segment

logger = logging.getLogger(__name__)


class StreamAssembler:
    """Lazy, strictly ordered sequence of decrypted chunks for one variant.

    ``manifest`` must be a resolved single-variant manifest (see
    :meth:`ManifestLoader.resolve`). Closing the generator returned by
    :meth:`chunks` cancels in-flight fetches and releases ``key_cache``.

    To resume after a :class:`PlaybackError`, pass its ``last_delivered``
    sequence as ``resume_after``.
    """

    def __init__(
        self,
        client: HttpClient,
        manifest: Manifest,
        key_cache: KeyCache,
        *,
        loader: Optional[ManifestLoader] = None,
        refresh: Optional[RefreshPolicy] = None,
        prefetch_window: int = 3,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        include_init: bool = True,
        resume_after: Optional[int] = None,
        mp4decrypt_path: Optional[str] = None,
    ) -> None:
        if len(manifest.variants) != 1 or not manifest.variants[0].is_resolved:
            raise ValueError("StreamAssembler needs a resolved single-variant manifest")
        self._client = client
        self._manifest = manifest
        self._key_cache = key_cache
        self._loader = loader or ManifestLoader(client)
        self._refresh = refresh or RefreshPolicy()
        self._prefetch_window = prefetch_window
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._include_init = include_init
        self._resume_after = resume_after
        self._mp4decrypt_path = mp4decrypt_path
        self._gap_sequences: set[int] = set()
        # a resumed stream has already delivered everything up to resume_after
        self.last_delivered: Optional[int] = resume_after

    @property
    def manifest(self) -> Manifest:
        return self._manifest

    async def chunks(self) -> AsyncIterator[DecryptedChunk]:
        variant = self._manifest.variants[0]
        fetcher = SegmentFetcher(
            self._client,
            variant.segments or (),
            window=self._prefetch_window,
            max_retries=self._max_retries,
            backoff=self._retry_backoff,
            resume_after=self._resume_after,
        )
        try:
            if self._include_init and variant.init_segment is not None:
                yield await self._init_chunk(variant.init_segment)

            while True:
                item = await fetcher.next_segment()
                if item is None:
                    if not self._manifest.is_live:
                        logger.info("Stream complete after segment %s", self.last_delivered)
                        return
                    if not await self._wait_for_new_segments(fetcher):
                        logger.info("Live stream ended after segment %s", self.last_delivered)
                        return
                    continue

                segment = item.segment
                data = await decrypt(
                    segment,
                    item.data,
                    self._key_cache,
                    variant_key=self._manifest.variants[0].key,
                    mp4decrypt_path=self._mp4decrypt_path,
                )
                chunk = DecryptedChunk(
                    sequence=segment.sequence,
                    data=data,
                    duration=segment.duration,
                    gap_before=segment.sequence in self._gap_sequences,
                )
                self.last_delivered = segment.sequence
                logger.debug("Emitting segment %s (%d bytes)", segment.sequence, len(data))
                yield chunk
        except PlaybackError as exc:
            exc.last_delivered = self.last_delivered
            raise
        finally:
            await fetcher.aclose()
            await self._key_cache.close()

    def __aiter__(self) -> AsyncIterator[DecryptedChunk]:
        return self.chunks()

    async def _init_chunk(self, init_segment: Segment) -> DecryptedChunk:
        try:
            response = await get_with_retry(
                self._client,
                init_segment.url,
                byte_range=init_segment.byte_range,
                max_retries=self._max_retries,
                backoff=self._retry_backoff,
                label="init segment",
            )
        except TransportError as exc:
            raise SegmentUnavailable(init_segment.sequence, init_segment.url) from exc
        # Only the init segment's own key applies; CENC init sections are clear.
        data = await decrypt(
            init_segment, response.body, self._key_cache, mp4decrypt_path=self._mp4decrypt_path
        )
        return DecryptedChunk(sequence=init_segment.sequence, data=data, is_init=True)

    def _refresh_delay(self) -> float:
        if self._refresh.interval is not None:
            return self._refresh.interval
        return self._manifest.refresh_interval or self._refresh.poll_interval

    async def _wait_for_new_segments(self, fetcher: SegmentFetcher) -> bool:
        """Refresh the live manifest until it lists new segments.

        Returns False when the stream has ended: the manifest carries an end
        marker, or the idle-refresh limit of the policy was reached.
        """
        idle = 0
        failures = 0
        delay = self._refresh_delay()

        while True:
            await asyncio.sleep(delay)
            try:
                manifest = await self._loader.refresh(self._manifest)
            except (FetchError, ParseError) as exc:
                failures += 1
                if self._refresh.max_failures is not None and failures > self._refresh.max_failures:
                    raise ManifestUnavailable(
                        f"Manifest refresh failed {failures} times: {exc}"
                    ) from exc
                delay = self._refresh_delay() * self._refresh.backoff ** failures
                logger.warning("Manifest refresh failed (%d), retrying in %.2fs: %s", failures, delay, exc)
                continue

            failures = 0
            delay = self._refresh_delay()
            self._manifest = manifest
            last = fetcher.last_known
            fresh = [
                segment
                for segment in manifest.variants[0].segments or ()
                if last is None or segment.sequence > last.sequence
            ]
            if fresh:
                if last is not None and fresh[0].sequence != last.sequence + 1:
                    logger.warning(
                        "Live sequence gap: %s -> %s", last.sequence, fresh[0].sequence
                    )
                    self._gap_sequences.add(fresh[0].sequence)
                added = fetcher.extend(fresh)
                logger.debug("Manifest refresh added %d segments", added)
                return True

            if not manifest.is_live:
                return False

            idle += 1
            if self._refresh.max_idle_refreshes is not None and idle >= self._refresh.max_idle_refreshes:
                logger.info("No new segments after %d refreshes, ending stream", idle)
                return False
