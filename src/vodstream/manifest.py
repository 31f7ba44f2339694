"""Manifest loading: format detection, parsing and lazy variant resolution."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Optional, Union

from .dash_parser import DashParser
from .downloader import HttpClient
from .errors import EmptyManifest, MalformedManifest
from .hls_parser import HlsParser
from .models import Manifest, ManifestFormat, Variant

logger = logging.getLogger(__name__)

HLS_CONTENT_TYPES = ("mpegurl", "x-mpegurl", "vnd.apple.mpegurl")
DASH_CONTENT_TYPES = ("dash+xml",)


def format_from_content_type(content_type: Optional[str]) -> Optional[ManifestFormat]:
    """Map a response ``Content-Type`` to a manifest format, if it names one."""
    if not content_type:
        return None
    value = content_type.split(";", 1)[0].strip().lower()
    if any(marker in value for marker in HLS_CONTENT_TYPES):
        return ManifestFormat.HLS
    if any(marker in value for marker in DASH_CONTENT_TYPES):
        return ManifestFormat.DASH
    return None


def detect_format(raw: Union[str, bytes]) -> ManifestFormat:
    """Sniff the manifest format from its first non-whitespace bytes."""
    head = raw[:512]
    if isinstance(head, bytes):
        head = head.decode("utf-8", errors="ignore")
    head = head.lstrip("\ufeff \t\r\n")
    if head.startswith("#EXTM3U"):
        return ManifestFormat.HLS
    if head.startswith("<"):
        return ManifestFormat.DASH
    raise MalformedManifest("Unrecognised manifest: neither an #EXTM3U playlist nor an XML document")


def parse_manifest(
    raw: Union[str, bytes],
    base_url: str,
    format_hint: Optional[ManifestFormat] = None,
    *,
    now: Optional[float] = None,
) -> Manifest:
    """Parse raw manifest bytes into a :class:`Manifest`.

    Args:
        raw: Manifest body
        base_url: URL the manifest was fetched from; relative references
            resolve against it
        format_hint: Declared format; sniffed from the content when omitted
        now: Wall time (epoch seconds) for the live edge of dynamic MPDs

    Raises:
        ParseError: the manifest is malformed, unsupported or empty
    """
    manifest_format = format_hint or detect_format(raw)

    if manifest_format is ManifestFormat.DASH:
        return DashParser.parse(raw, base_url, now=now)

    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedManifest(f"Playlist is not valid UTF-8: {exc}") from exc
    return HlsParser.parse(raw, base_url)


class ManifestLoader:
    """Fetches manifests through an :class:`HttpClient` and parses them.

    ``clock`` supplies the wall time used to locate the live edge of dynamic
    MPDs.
    """

    def __init__(
        self,
        client: HttpClient,
        format_hint: Optional[ManifestFormat] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._format_hint = format_hint
        self._clock = clock

    async def load(self, url: str) -> Manifest:
        """Fetch and parse the manifest at ``url``."""
        response = await self._client.get(url)
        hint = self._format_hint or format_from_content_type(response.content_type)
        manifest = parse_manifest(response.body, response.url, hint, now=self._clock())
        logger.info(
            "Loaded %s manifest %s (%d variants, %s)",
            manifest.format.value,
            response.url,
            len(manifest.variants),
            manifest.stream_type.value,
        )
        return manifest

    async def resolve(self, manifest: Manifest, variant: Variant) -> Manifest:
        """Return a single-variant manifest whose variant carries its segments.

        HLS master entries trigger one fetch of the variant's media playlist;
        variants that already hold segments need no network call.
        """
        if variant.is_resolved:
            return replace(manifest, variants=(variant,))

        if not variant.playlist_url:
            raise MalformedManifest(f"Variant {variant.id} has neither segments nor a playlist URL")

        logger.debug("Fetching media playlist for variant %s: %s", variant.id, variant.playlist_url)
        response = await self._client.get(variant.playlist_url)
        media = HlsParser.parse_media(self._decode(response.body), response.url, variant)
        return replace(media, subtitle_tracks=manifest.subtitle_tracks)

    async def refresh(self, manifest: Manifest) -> Manifest:
        """Re-fetch a resolved single-variant manifest (live playback)."""
        current = manifest.variants[0]
        response = await self._client.get(manifest.url)

        if manifest.format is ManifestFormat.HLS:
            refreshed = HlsParser.parse_media(self._decode(response.body), response.url, current)
            return replace(refreshed, subtitle_tracks=manifest.subtitle_tracks)

        parsed = DashParser.parse(response.body, response.url, now=self._clock())
        for variant in parsed.variants:
            if variant.id == current.id:
                return replace(parsed, variants=(variant,))
        raise EmptyManifest(f"Representation {current.id} disappeared from {manifest.url}")

    @staticmethod
    def _decode(body: bytes) -> str:
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedManifest(f"Playlist is not valid UTF-8: {exc}") from exc
