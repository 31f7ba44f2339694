"""Playback session: manifest → selection → decrypted chunk stream."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from .assembler import StreamAssembler
from .decryptor import KeyCache
from .downloader import HttpClient, SegmentDownloader
from .errors import ParseError, PlaybackError, SelectionError
from .manifest import ManifestLoader
from .models import (
    DecryptedChunk,
    Manifest,
    Selection,
    SelectionConstraints,
    StreamConfig,
    StreamInfo,
    StreamStatus,
)
from .selector import select_variant

logger = logging.getLogger(__name__)


class PlaybackSession:
    """Owns the HTTP client and key cache of one playback.

    Usage::

        async with PlaybackSession(StreamConfig(manifest_url=url)) as session:
            await session.open()
            async for chunk in session.chunks():
                ...
    """

    def __init__(self, config: StreamConfig, client: Optional[HttpClient] = None) -> None:
        self.config = config
        self.status: StreamStatus = StreamStatus.INITIALIZING
        self.error: Optional[str] = None

        self._client = client
        self._own_client: Optional[SegmentDownloader] = None
        self._loader: Optional[ManifestLoader] = None
        self._key_cache: Optional[KeyCache] = None
        self._assembler: Optional[StreamAssembler] = None

        self.manifest: Optional[Manifest] = None
        self.media_manifest: Optional[Manifest] = None
        self.selection: Optional[Selection] = None

    async def __aenter__(self) -> "PlaybackSession":
        if self._client is None:
            self._own_client = SegmentDownloader(
                headers=self.config.headers, timeout=self.config.request_timeout
            )
            await self._own_client.__aenter__()
            self._client = self._own_client
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def client(self) -> HttpClient:
        if self._client is None:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")
        return self._client

    async def open(self) -> Selection:
        """Load the manifest, pick a variant and fetch its segment list."""
        self._loader = ManifestLoader(self.client, self.config.format_hint)
        try:
            self.manifest = await self._loader.load(self.config.manifest_url)
            self.selection = select_variant(
                self.manifest, self.config.constraints, strict=self.config.strict_selection
            )
            self.media_manifest = await self._loader.resolve(self.manifest, self.selection.variant)
        except (ParseError, SelectionError, PlaybackError) as exc:
            self._record_error(f"Failed to open {self.config.manifest_url}: {exc}")
            raise

        self.status = StreamStatus.READY
        variant = self.media_manifest.variants[0]
        logger.info(
            "Opened %s: variant %s, %d segments, %s",
            self.config.manifest_url,
            variant.id,
            len(variant.segments or ()),
            self.media_manifest.stream_type.value,
        )
        return self.selection

    async def chunks(self) -> AsyncIterator[DecryptedChunk]:
        """Decrypted chunks of the selected variant, in sequence order."""
        if self.media_manifest is None:
            await self.open()

        self._key_cache = KeyCache(
            self.client,
            key_map=self.config.key_map,
            max_retries=self.config.max_retries,
            backoff=self.config.retry_backoff,
        )
        self._assembler = StreamAssembler(
            self.client,
            self.media_manifest,
            self._key_cache,
            loader=self._loader,
            refresh=self.config.refresh,
            prefetch_window=self.config.prefetch_window,
            max_retries=self.config.max_retries,
            retry_backoff=self.config.retry_backoff,
            include_init=self.config.include_init,
            resume_after=self.config.resume_after,
            mp4decrypt_path=self.config.mp4decrypt_path,
        )

        self.status = StreamStatus.RUNNING
        stream = self._assembler.chunks()
        try:
            async for chunk in stream:
                yield chunk
        except PlaybackError as exc:
            self._record_error(str(exc))
            raise
        else:
            self.status = StreamStatus.COMPLETED
        finally:
            await stream.aclose()
            if self.status is StreamStatus.RUNNING:
                self.status = StreamStatus.STOPPED

    def info(self) -> StreamInfo:
        """Return current information for this session."""
        selection = self.selection
        variant = selection.variant if selection else None
        return StreamInfo(
            manifest_url=self.config.manifest_url,
            status=self.status,
            is_live=bool(self.media_manifest and self.media_manifest.is_live),
            variant_id=variant.id if variant else None,
            bandwidth=variant.bandwidth if variant else None,
            codecs=variant.codecs if variant else None,
            resolution=variant.resolution if variant else None,
            audio_language=(
                selection.audio_track.language if selection and selection.audio_track else None
            ),
            subtitle_language=(
                selection.subtitle_track.language if selection and selection.subtitle_track else None
            ),
            relaxed=bool(selection and selection.relaxed),
            error=self.error,
            last_sequence=self._assembler.last_delivered if self._assembler else None,
        )

    async def close(self) -> None:
        if self._key_cache is not None:
            await self._key_cache.close()
        if self._own_client is not None:
            await self._own_client.close()
            self._own_client = None
            self._client = None

    def _record_error(self, message: str) -> None:
        self.error = message
        self.status = StreamStatus.ERROR
        logger.error("Playback error: %s", message)


async def stream_chunks(
    url: str,
    constraints: Optional[SelectionConstraints] = None,
    *,
    client: Optional[HttpClient] = None,
    **options,
) -> AsyncIterator[DecryptedChunk]:
    """Convenience wrapper: decrypted chunks of ``url`` under ``constraints``.

    Extra keyword arguments are :class:`StreamConfig` fields.
    """
    config = StreamConfig(
        manifest_url=url, constraints=constraints or SelectionConstraints(), **options
    )
    async with PlaybackSession(config, client=client) as session:
        async for chunk in session.chunks():
            yield chunk
