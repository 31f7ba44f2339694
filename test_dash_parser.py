#!/usr/bin/env python3
"""Test DASH manifest parsing."""

from datetime import datetime, timezone

import pytest

from vodstream.dash_parser import DashParser
from vodstream.errors import EmptyManifest, MalformedManifest, UnsupportedFeature
from vodstream.manifest import parse_manifest
from vodstream.models import ByteRange, ManifestFormat, StreamType


MPD_URL = "https://example.com/manifest.mpd"

SAMPLE_MPD = """<?xml version=\"1.0\" encoding=\"utf-8\"?>
<MPD xmlns=\"urn:mpeg:dash:schema:mpd:2011\"
     xmlns:cenc=\"urn:mpeg:cenc:2013\"
     mediaPresentationDuration=\"PT0H0M8.000S\">
  <Period duration=\"PT0H0M8.000S\">
    <AdaptationSet mimeType=\"video/mp4\" segmentAlignment=\"true\">
      <SegmentTemplate timescale=\"24\" media=\"video/$Number%02d$.m4s\"
                        initialization=\"video/init.mp4\" startNumber=\"1\"
                        duration=\"96\" />
      <Representation id=\"video-main\" codecs=\"avc1.4d401e\"
                      bandwidth=\"800000\" width=\"1280\" height=\"720\">
        <ContentProtection schemeIdUri=\"urn:mpeg:dash:mp4protection:2011\"
                            value=\"cenc\"
                            cenc:default_KID=\"11111111-2222-3333-4444-555555555555\" />
      </Representation>
    </AdaptationSet>
    <AdaptationSet mimeType=\"audio/mp4\" lang=\"en\" segmentAlignment=\"true\">
      <SegmentTemplate timescale=\"48000\" media=\"audio/$Number%02d$.m4s\"
                        initialization=\"audio/init.mp4\" startNumber=\"5\"
                        duration=\"192000\" />
      <Representation id=\"audio-main\" codecs=\"mp4a.40.2\" bandwidth=\"128000\" />
    </AdaptationSet>
    <AdaptationSet contentType=\"text\" mimeType=\"text/vtt\" lang=\"fr\">
      <Representation id=\"subs-fr\" bandwidth=\"256\">
        <BaseURL>subs/fr.vtt</BaseURL>
      </Representation>
    </AdaptationSet>
  </Period>
</MPD>
"""

TEMPLATE_MPD = """<?xml version="1.0"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static" mediaPresentationDuration="PT10S">
  <BaseURL>https://media.example.com/vod/</BaseURL>
  <Period>
    <AdaptationSet contentType="video" mimeType="video/mp4">
      <SegmentTemplate timescale="90000" duration="180000" startNumber="3"
                       presentationTimeOffset="900" media="$RepresentationID$/t$Time$-n$Number%05d$.m4s"/>
      <Representation id="v1" bandwidth="1000000" width="960" height="540"/>
    </AdaptationSet>
  </Period>
</MPD>
"""


def test_segment_template_parsing():
    manifest = DashParser.parse(SAMPLE_MPD, MPD_URL)
    assert manifest.format is ManifestFormat.DASH
    assert len(manifest.variants) == 2

    video = next(variant for variant in manifest.variants if variant.is_video)
    audio = next(variant for variant in manifest.variants if not variant.is_video)

    assert video.init_segment.url == "https://example.com/video/init.mp4"
    assert audio.init_segment.url == "https://example.com/audio/init.mp4"
    assert video.segments[0].url == "https://example.com/video/01.m4s"
    assert video.segments[0].sequence == 1
    assert audio.segments[0].url == "https://example.com/audio/05.m4s"
    assert audio.segments[0].sequence == 5
    assert video.segments[0].duration == pytest.approx(4.0)
    assert len(video.segments) == 2


def test_content_protection_and_tracks():
    manifest = DashParser.parse(SAMPLE_MPD, MPD_URL)
    video = manifest.variants[0]

    assert video.key.method == "cenc"
    assert video.key.kid == "11111111222233334444555555555555"
    assert manifest.variants[1].key is None

    assert [track.language for track in video.audio_tracks] == ["en"]
    assert manifest.subtitle_tracks[0].language == "fr"
    assert manifest.subtitle_tracks[0].uri == "https://example.com/subs/fr.vtt"


def test_template_start_times_are_exact():
    manifest = DashParser.parse(TEMPLATE_MPD, MPD_URL)
    segments = manifest.variants[0].segments

    # 10s at 2s per segment
    assert len(segments) == 5
    for segment in segments:
        assert segment.start_time == (segment.sequence - 3) * 180000 / 90000
    assert [s.sequence for s in segments] == [3, 4, 5, 6, 7]
    assert segments[0].url == "https://media.example.com/vod/v1/t900-n00003.m4s"
    assert segments[1].url == "https://media.example.com/vod/v1/t180900-n00004.m4s"


def test_segment_timeline():
    mpd = """<?xml version="1.0"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" mediaPresentationDuration="PT10S">
  <Period>
    <AdaptationSet mimeType="video/mp4">
      <SegmentTemplate timescale="1000" media="seg-$Time$.m4s" startNumber="0">
        <SegmentTimeline>
          <S t="0" d="4000" r="1"/>
          <S d="2000"/>
        </SegmentTimeline>
      </SegmentTemplate>
      <Representation id="v" bandwidth="500000"/>
    </AdaptationSet>
  </Period>
</MPD>
"""
    segments = DashParser.parse(mpd, MPD_URL).variants[0].segments
    assert [s.url.rsplit("/", 1)[1] for s in segments] == ["seg-0.m4s", "seg-4000.m4s", "seg-8000.m4s"]
    assert [s.start_time for s in segments] == [0.0, 4.0, 8.0]
    assert [s.sequence for s in segments] == [0, 1, 2]


def test_segment_list_with_media_ranges():
    mpd = """<?xml version="1.0"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011">
  <Period>
    <AdaptationSet mimeType="audio/mp4">
      <Representation id="a" bandwidth="64000">
        <BaseURL>audio.mp4</BaseURL>
        <SegmentList timescale="10" duration="40">
          <Initialization sourceURL="audio-init.mp4"/>
          <SegmentURL mediaRange="0-999"/>
          <SegmentURL mediaRange="1000-1999"/>
        </SegmentList>
      </Representation>
    </AdaptationSet>
  </Period>
</MPD>
"""
    variant = DashParser.parse(mpd, MPD_URL).variants[0]
    assert variant.content_type == "audio"
    assert [s.url for s in variant.segments] == ["https://example.com/audio.mp4"] * 2
    assert variant.segments[1].byte_range == ByteRange(length=1000, offset=1000)
    assert variant.segments[1].start_time == pytest.approx(4.0)
    assert variant.init_segment.url == "https://example.com/audio-init.mp4"


def test_dynamic_template_tracks_live_edge():
    mpd = """<?xml version="1.0"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="dynamic"
     availabilityStartTime="2024-01-01T00:00:00Z" minimumUpdatePeriod="PT2S"
     timeShiftBufferDepth="PT10S">
  <Period start="PT0S">
    <AdaptationSet mimeType="video/mp4">
      <SegmentTemplate timescale="1" duration="2" startNumber="1" media="live_$Number$.m4s"/>
      <Representation id="v" bandwidth="500000"/>
    </AdaptationSet>
  </Period>
</MPD>
"""
    start = datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()
    manifest = DashParser.parse(mpd, MPD_URL, now=start + 101)

    assert manifest.stream_type is StreamType.LIVE
    assert manifest.refresh_interval == 2.0
    # 50 complete segments are available; the buffer keeps the last five
    assert [s.sequence for s in manifest.variants[0].segments] == [46, 47, 48, 49, 50]


def test_trick_play_adaptation_set_is_skipped():
    mpd = SAMPLE_MPD.replace(
        '<AdaptationSet mimeType="video/mp4" segmentAlignment="true">',
        '<AdaptationSet mimeType="video/mp4" segmentAlignment="true">'
        '<EssentialProperty schemeIdUri="http://dashif.org/guidelines/trickmode" value="1"/>',
    )
    manifest = DashParser.parse(mpd, MPD_URL)
    assert [variant.id for variant in manifest.variants] == ["audio-main"]


def test_invalid_documents():
    with pytest.raises(MalformedManifest):
        parse_manifest(b"<MPD><Period>", MPD_URL)
    with pytest.raises(MalformedManifest):
        parse_manifest(b"<html xmlns='http://www.w3.org/1999/xhtml'/>", MPD_URL)
    with pytest.raises(UnsupportedFeature):
        parse_manifest(SAMPLE_MPD.replace("</Period>", "</Period><Period/>"), MPD_URL)
    with pytest.raises(EmptyManifest):
        parse_manifest(
            '<MPD xmlns="urn:mpeg:dash:schema:mpd:2011"><Period/></MPD>',
            MPD_URL,
            ManifestFormat.DASH,
        )


def test_duration_template_without_presentation_length():
    mpd = """<?xml version="1.0"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static">
  <Period>
    <AdaptationSet mimeType="video/mp4">
      <SegmentTemplate timescale="1" duration="4" media="seg-$Number$.m4s"/>
      <Representation id="v" bandwidth="500000"/>
    </AdaptationSet>
  </Period>
</MPD>
"""
    with pytest.raises(MalformedManifest):
        DashParser.parse(mpd, MPD_URL)

    dynamic = mpd.replace('type="static"', 'type="dynamic"')
    with pytest.raises(MalformedManifest):
        DashParser.parse(dynamic, MPD_URL)


def test_empty_media_range_is_malformed():
    mpd = """<?xml version="1.0"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011">
  <Period>
    <AdaptationSet mimeType="audio/mp4">
      <Representation id="a" bandwidth="64000">
        <BaseURL>audio.mp4</BaseURL>
        <SegmentList timescale="10" duration="40">
          <SegmentURL mediaRange="10-5"/>
        </SegmentList>
      </Representation>
    </AdaptationSet>
  </Period>
</MPD>
"""
    with pytest.raises(MalformedManifest):
        DashParser.parse(mpd, MPD_URL)
