#!/usr/bin/env python3
"""Test HLS playlist parsing."""

import pytest

from vodstream.errors import EmptyManifest, MalformedManifest, UnsupportedFeature
from vodstream.manifest import detect_format, format_from_content_type, parse_manifest
from vodstream.models import ByteRange, ManifestFormat, StreamType


MASTER_URL = "https://cdn.example.com/title/master.m3u8"

MASTER_PLAYLIST = """#EXTM3U
#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",LANGUAGE="en",NAME="English",DEFAULT=YES,URI="audio/en.m3u8"
#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",LANGUAGE="ja",NAME="Japanese",URI="audio/ja.m3u8"
#EXT-X-MEDIA:TYPE=SUBTITLES,GROUP-ID="subs",LANGUAGE="de",NAME="Deutsch",URI="subs/de.m3u8"
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360,CODECS="avc1.4d401e,mp4a.40.2",AUDIO="aud",SUBTITLES="subs"
low/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=2500000,RESOLUTION=1280x720,CODECS="avc1.4d401f,mp4a.40.2",AUDIO="aud",SUBTITLES="subs"
mid/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=5000000,RESOLUTION=1920x1080,CODECS="avc1.640028,mp4a.40.2",AUDIO="aud",SUBTITLES="subs"
https://other.example.com/high/index.m3u8
"""

MEDIA_URL = "https://cdn.example.com/title/mid/index.m3u8"

MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:6
#EXT-X-MEDIA-SEQUENCE:7
#EXT-X-KEY:METHOD=AES-128,URI="keys/k1.bin"
#EXTINF:6.0,
seg7.ts
#EXTINF:6.0,
seg8.ts
#EXT-X-KEY:METHOD=AES-128,URI="keys/k2.bin",IV=0x000102030405060708090a0b0c0d0e0f
#EXTINF:4.5,
seg9.ts
#EXT-X-KEY:METHOD=NONE
#EXTINF:2.0,
seg10.ts
#EXT-X-ENDLIST
"""


def test_master_playlist_variants():
    manifest = parse_manifest(MASTER_PLAYLIST, MASTER_URL)

    assert manifest.format is ManifestFormat.HLS
    assert [v.bandwidth for v in manifest.variants] == [800000, 2500000, 5000000]
    assert manifest.variants[1].resolution == (1280, 720)
    assert manifest.variants[1].playlist_url == MEDIA_URL
    assert manifest.variants[2].playlist_url == "https://other.example.com/high/index.m3u8"
    # media playlists are fetched lazily
    assert all(v.segments is None for v in manifest.variants)

    audio_languages = [track.language for track in manifest.variants[0].audio_tracks]
    assert audio_languages == ["en", "ja"]
    assert manifest.variants[0].audio_tracks[0].default
    assert manifest.subtitle_tracks[0].language == "de"
    assert manifest.subtitle_tracks[0].uri == "https://cdn.example.com/title/subs/de.m3u8"


def test_media_playlist_segments_follow_extinf():
    manifest = parse_manifest(MEDIA_PLAYLIST, MEDIA_URL)
    variant = manifest.variants[0]

    assert manifest.stream_type is StreamType.ON_DEMAND
    assert len(variant.segments) == MEDIA_PLAYLIST.count("#EXTINF")
    assert [s.sequence for s in variant.segments] == [7, 8, 9, 10]
    assert variant.segments[0].url == "https://cdn.example.com/title/mid/seg7.ts"
    assert [s.start_time for s in variant.segments] == [0.0, 6.0, 12.0, 16.5]
    assert manifest.duration == pytest.approx(18.5)
    assert manifest.refresh_interval == 6.0


def test_media_playlist_keys():
    variant = parse_manifest(MEDIA_PLAYLIST, MEDIA_URL).variants[0]

    assert variant.key.method == "AES-128"
    assert variant.key.uri == "https://cdn.example.com/title/mid/keys/k1.bin"
    assert variant.key.iv is None

    first, second, third, fourth = variant.segments
    assert first.key is None and second.key is None
    assert third.key.uri == "https://cdn.example.com/title/mid/keys/k2.bin"
    assert third.key.iv == bytes(range(16))
    assert fourth.key.method == "NONE"
    assert not fourth.key.is_encrypted


def test_default_media_sequence_is_zero():
    playlist = "#EXTM3U\n#EXT-X-TARGETDURATION:4\n#EXTINF:4,\na.ts\n#EXTINF:4,\nb.ts\n#EXT-X-ENDLIST\n"
    variant = parse_manifest(playlist, MEDIA_URL).variants[0]
    assert [s.sequence for s in variant.segments] == [0, 1]


def test_byterange_offsets_continue():
    playlist = """#EXTM3U
#EXT-X-TARGETDURATION:4
#EXTINF:4,
#EXT-X-BYTERANGE:1000@0
media.ts
#EXTINF:4,
#EXT-X-BYTERANGE:500
media.ts
#EXTINF:4,
#EXT-X-BYTERANGE:200@4000
media.ts
#EXT-X-ENDLIST
"""
    segments = parse_manifest(playlist, MEDIA_URL).variants[0].segments
    assert [s.byte_range for s in segments] == [
        ByteRange(length=1000, offset=0),
        ByteRange(length=500, offset=1000),
        ByteRange(length=200, offset=4000),
    ]
    assert segments[1].byte_range.header() == "bytes=1000-1499"


def test_init_section_and_base_url_override():
    playlist = """#EXTM3U
#EXT-X-BASE-URL:https://media.example.net/assets/
#EXT-X-TARGETDURATION:4
#EXT-X-MAP:URI="init.mp4"
#EXTINF:4,
frag1.m4s
#EXT-X-ENDLIST
"""
    variant = parse_manifest(playlist, MEDIA_URL).variants[0]
    assert variant.init_segment.url == "https://media.example.net/assets/init.mp4"
    assert variant.segments[0].url == "https://media.example.net/assets/frag1.m4s"


def test_live_playlist_without_endlist():
    playlist = "#EXTM3U\n#EXT-X-TARGETDURATION:2\n#EXT-X-MEDIA-SEQUENCE:100\n#EXTINF:2,\nlive100.ts\n"
    manifest = parse_manifest(playlist, MEDIA_URL)
    assert manifest.is_live
    assert manifest.duration is None
    assert manifest.variants[0].segments[0].sequence == 100


def test_missing_header_is_malformed():
    with pytest.raises(MalformedManifest):
        parse_manifest("#EXTINF:4,\na.ts\n", MEDIA_URL, ManifestFormat.HLS)
    with pytest.raises(MalformedManifest):
        parse_manifest(b"#EXTINF:4,\na.ts\n", MEDIA_URL)


def test_invalid_extinf_is_malformed():
    with pytest.raises(MalformedManifest):
        parse_manifest("#EXTM3U\n#EXTINF:abc,\na.ts\n#EXT-X-ENDLIST\n", MEDIA_URL)


def test_zero_length_byterange_is_malformed():
    playlist = "#EXTM3U\n#EXT-X-TARGETDURATION:4\n#EXTINF:4,\n#EXT-X-BYTERANGE:0@0\nmedia.ts\n#EXT-X-ENDLIST\n"
    with pytest.raises(MalformedManifest):
        parse_manifest(playlist, MEDIA_URL)


def test_encrypted_init_section_carries_its_key():
    playlist = """#EXTM3U
#EXT-X-TARGETDURATION:4
#EXT-X-MEDIA-SEQUENCE:30
#EXT-X-KEY:METHOD=AES-128,URI="keys/k1.bin"
#EXT-X-MAP:URI="init.mp4"
#EXTINF:4,
frag30.m4s
#EXT-X-ENDLIST
"""
    variant = parse_manifest(playlist, MEDIA_URL).variants[0]
    assert variant.init_segment.key.uri == "https://cdn.example.com/title/mid/keys/k1.bin"
    assert variant.init_segment.sequence == 30

    clear = parse_manifest(playlist.replace("#EXT-X-KEY:METHOD=AES-128,URI=\"keys/k1.bin\"\n", ""), MEDIA_URL)
    assert clear.variants[0].init_segment.key is None


def test_empty_on_demand_playlist():
    with pytest.raises(EmptyManifest):
        parse_manifest("#EXTM3U\n#EXT-X-TARGETDURATION:4\n#EXT-X-ENDLIST\n", MEDIA_URL)


def test_sample_aes_is_unsupported():
    playlist = '#EXTM3U\n#EXT-X-KEY:METHOD=SAMPLE-AES,URI="k"\n#EXTINF:4,\na.ts\n#EXT-X-ENDLIST\n'
    with pytest.raises(UnsupportedFeature):
        parse_manifest(playlist, MEDIA_URL)


def test_format_detection():
    assert detect_format(b"\n  #EXTM3U\n") is ManifestFormat.HLS
    assert detect_format("<?xml version='1.0'?><MPD/>") is ManifestFormat.DASH
    assert format_from_content_type("application/vnd.apple.mpegurl; charset=utf-8") is ManifestFormat.HLS
    assert format_from_content_type("application/dash+xml") is ManifestFormat.DASH
    assert format_from_content_type("text/plain") is None
    with pytest.raises(MalformedManifest):
        detect_format(b"garbage")
