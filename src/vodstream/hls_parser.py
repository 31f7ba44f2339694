"""Parse HLS master and media playlists into the shared manifest model."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import m3u8
from m3u8.parser import ParseError as M3U8ParseError

from .errors import EmptyManifest, MalformedManifest, UnsupportedFeature
from .models import (
    ByteRange,
    KeyInfo,
    Manifest,
    ManifestFormat,
    MediaTrack,
    Segment,
    StreamType,
    Variant,
)

logger = logging.getLogger(__name__)

AUDIO_CODEC_PREFIXES = ("mp4a", "ac-3", "ec-3", "opus", "flac", "alac")


class HlsParser:
    """Parser for HLS playlists."""

    HEADER = "#EXTM3U"
    BASE_URL_TAG = "#EXT-X-BASE-URL:"
    UNSUPPORTED_METHODS = ("SAMPLE-AES", "SAMPLE-AES-CTR", "SAMPLE-AES-CENC")

    @staticmethod
    def parse(content: str, url: str) -> Manifest:
        """Parse a master or media playlist."""
        playlist, base_url = HlsParser._load(content, url)
        if playlist.is_variant:
            return HlsParser._parse_master(playlist, url, base_url)

        variant = HlsParser._build_media_variant(
            playlist, base_url, Variant(id="0", bandwidth=0, playlist_url=url)
        )
        return HlsParser._media_manifest(playlist, url, variant)

    @staticmethod
    def parse_media(content: str, url: str, template: Variant) -> Manifest:
        """Parse the media playlist behind ``template`` (a master playlist entry).

        The master entry's attributes are kept; segments, key and init
        segment come from the media playlist.
        """
        playlist, base_url = HlsParser._load(content, url)
        if playlist.is_variant:
            raise MalformedManifest(f"Expected a media playlist at {url}, got a master playlist")
        variant = HlsParser._build_media_variant(playlist, base_url, template)
        return HlsParser._media_manifest(playlist, url, variant)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @staticmethod
    def _load(content: str, url: str) -> Tuple[m3u8.M3U8, str]:
        lines = [line.strip() for line in content.lstrip("\ufeff").splitlines()]
        first = next((line for line in lines if line), None)
        if first != HlsParser.HEADER:
            raise MalformedManifest("Playlist does not start with #EXTM3U")

        base_url = url
        for line in lines:
            if line.startswith(HlsParser.BASE_URL_TAG):
                base_url = HlsParser._resolve_url(url, line[len(HlsParser.BASE_URL_TAG) :].strip())
                break

        try:
            playlist = m3u8.loads(content, uri=url)
        except (M3U8ParseError, ValueError, TypeError, AttributeError, IndexError, KeyError) as exc:
            raise MalformedManifest(f"Invalid playlist: {exc}") from exc
        return playlist, base_url

    # ------------------------------------------------------------------
    # Master playlists
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_master(playlist: m3u8.M3U8, url: str, base_url: str) -> Manifest:
        audio_by_group: Dict[str, List[MediaTrack]] = {}
        subtitles: List[MediaTrack] = []

        for media in playlist.media:
            media_type = (media.type or "").upper()
            if media_type not in ("AUDIO", "SUBTITLES"):
                continue
            track = MediaTrack(
                kind="audio" if media_type == "AUDIO" else "subtitles",
                group_id=media.group_id,
                language=media.language,
                name=media.name,
                uri=HlsParser._resolve_url(base_url, media.uri) if media.uri else None,
                default=(media.default or "").upper() == "YES",
            )
            if track.kind == "audio":
                audio_by_group.setdefault(media.group_id or "", []).append(track)
            else:
                subtitles.append(track)

        variants: List[Variant] = []
        for index, entry in enumerate(playlist.playlists):
            if not entry.uri:
                continue
            info = entry.stream_info
            bandwidth = info.bandwidth or info.average_bandwidth or 0
            width, height = info.resolution if info.resolution else (None, None)
            codecs = info.codecs or ""
            variants.append(
                Variant(
                    id=str(index),
                    bandwidth=int(bandwidth),
                    width=width,
                    height=height,
                    codecs=codecs,
                    content_type=HlsParser._content_type(codecs, info.resolution),
                    audio_group=info.audio,
                    subtitle_group=info.subtitles,
                    audio_tracks=tuple(audio_by_group.get(info.audio or "", ())),
                    playlist_url=HlsParser._resolve_url(base_url, entry.uri),
                    index=index,
                )
            )

        if not variants:
            raise EmptyManifest("Master playlist lists no variant streams")

        logger.debug("Parsed HLS master playlist %s with %d variants", url, len(variants))
        return Manifest(
            format=ManifestFormat.HLS,
            url=url,
            variants=tuple(variants),
            stream_type=StreamType.ON_DEMAND,
            subtitle_tracks=tuple(subtitles),
        )

    @staticmethod
    def _content_type(codecs: str, resolution) -> str:
        if resolution:
            return "video"
        parts = [part.strip().lower() for part in codecs.split(",") if part.strip()]
        if parts and all(part.startswith(AUDIO_CODEC_PREFIXES) for part in parts):
            return "audio"
        return "video"

    # ------------------------------------------------------------------
    # Media playlists
    # ------------------------------------------------------------------

    @staticmethod
    def _media_manifest(playlist: m3u8.M3U8, url: str, variant: Variant) -> Manifest:
        playlist_type = (playlist.playlist_type or "").lower()
        is_live = not playlist.is_endlist and playlist_type != "vod"

        if not variant.segments and not is_live:
            raise EmptyManifest(f"Media playlist {url} has no segments")

        duration = None
        if not is_live:
            duration = sum(segment.duration for segment in variant.segments or ())

        return Manifest(
            format=ManifestFormat.HLS,
            url=url,
            variants=(variant,),
            stream_type=StreamType.LIVE if is_live else StreamType.ON_DEMAND,
            duration=duration,
            refresh_interval=float(playlist.target_duration) if playlist.target_duration else None,
        )

    @staticmethod
    def _build_media_variant(playlist: m3u8.M3U8, base_url: str, template: Variant) -> Variant:
        start_sequence = playlist.media_sequence or 0
        segments: List[Segment] = []
        variant_key: Optional[KeyInfo] = None
        key_seen = False
        init_segment: Optional[Segment] = None
        range_cursor: Dict[str, int] = {}
        start_time = 0.0

        for position, entry in enumerate(playlist.segments):
            if entry.duration is None:
                raise MalformedManifest(f"Segment {entry.uri} has no #EXTINF duration")

            sequence = start_sequence + position
            url = HlsParser._resolve_url(base_url, entry.uri)
            key = HlsParser._key_info(entry.key, base_url)
            if not key_seen:
                variant_key = key
                key_seen = True

            byte_range = None
            if entry.byterange:
                byte_range = HlsParser._parse_byterange(entry.byterange, range_cursor.get(url))
                range_cursor[url] = byte_range.offset + byte_range.length

            if init_segment is None and entry.init_section is not None and entry.init_section.uri:
                init_range = None
                if entry.init_section.byterange:
                    init_range = HlsParser._parse_byterange(entry.init_section.byterange, 0)
                # The key in effect at EXT-X-MAP also encrypts the init section
                init_segment = Segment(
                    url=HlsParser._resolve_url(base_url, entry.init_section.uri),
                    duration=0.0,
                    sequence=sequence,
                    byte_range=init_range,
                    key=key if key is not None and key.is_encrypted else None,
                )

            segments.append(
                Segment(
                    url=url,
                    duration=float(entry.duration),
                    sequence=sequence,
                    start_time=start_time,
                    byte_range=byte_range,
                    key=key if key != variant_key else None,
                )
            )
            start_time += float(entry.duration)

        return replace(
            template,
            segments=tuple(segments),
            key=variant_key,
            init_segment=init_segment,
        )

    @staticmethod
    def _key_info(key: Optional[m3u8.Key], base_url: str) -> Optional[KeyInfo]:
        if key is None or not key.method:
            return None
        method = key.method.upper()
        if method == "NONE":
            return KeyInfo(method="NONE")
        if method in HlsParser.UNSUPPORTED_METHODS:
            raise UnsupportedFeature(f"Encryption method {method} is not supported")
        if not key.uri:
            raise MalformedManifest(f"EXT-X-KEY with METHOD={method} has no URI")
        return KeyInfo(
            method=method,
            uri=HlsParser._resolve_url(base_url, key.uri),
            iv=HlsParser._parse_iv(key.iv) if key.iv else None,
        )

    @staticmethod
    def _parse_iv(value: str) -> bytes:
        text = value.strip()
        if text.lower().startswith("0x"):
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise MalformedManifest(f"Invalid IV {value!r}") from exc
        if len(raw) > 16:
            raise MalformedManifest(f"IV {value!r} is longer than 128 bits")
        return raw.rjust(16, b"\x00")

    @staticmethod
    def _parse_byterange(value: str, previous_end: Optional[int]) -> ByteRange:
        length_text, _, offset_text = value.partition("@")
        try:
            length = int(length_text)
            offset = int(offset_text) if offset_text else previous_end
        except ValueError as exc:
            raise MalformedManifest(f"Invalid EXT-X-BYTERANGE {value!r}") from exc
        if offset is None:
            raise MalformedManifest(f"EXT-X-BYTERANGE {value!r} has no offset to continue from")
        if length <= 0 or offset < 0:
            raise MalformedManifest(f"EXT-X-BYTERANGE {value!r} selects no bytes")
        return ByteRange(length=length, offset=offset)

    @staticmethod
    def _resolve_url(base: str, relative: str) -> str:
        parsed = urlparse(relative)
        if parsed.scheme:
            return relative
        return urljoin(base, relative)
