"""Parse DASH MPD manifests into the shared manifest model."""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from lxml import etree

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


@dataclass
class _ResolvedSegmentTemplate:
    """Helpers for resolved SegmentTemplate attributes."""

    initialization: Optional[str]
    media: Optional[str]
    timescale: int
    duration: Optional[int]
    start_number: int
    presentation_time_offset: int
    timeline: Optional[etree._Element]


@dataclass
class _PresentationTiming:
    """MPD-level timing needed to expand templates."""

    is_live: bool
    total_duration: Optional[float]
    availability_start: Optional[float]
    period_start: float
    time_shift_buffer: Optional[float]
    now: float


class DashParser:
    """Parser for DASH MPD manifests."""

    DASH_NS = {
        "mpd": "urn:mpeg:dash:schema:mpd:2011",
        "cenc": "urn:mpeg:cenc:2013",
    }

    MAX_TIMELINE_REPEAT = 30
    LIVE_WINDOW_SEGMENTS = 5
    TRICKMODE_SCHEME = "http://dashif.org/guidelines/trickmode"

    @staticmethod
    def parse(mpd_content: str | bytes, mpd_url: str, *, now: Optional[float] = None) -> Manifest:
        """Parse MPD manifest content.

        ``now`` (epoch seconds) pins the wall clock used to locate the live
        edge of dynamic manifests.
        """
        raw = mpd_content.encode("utf-8") if isinstance(mpd_content, str) else mpd_content
        try:
            root = etree.fromstring(raw, parser=etree.XMLParser(resolve_entities=False))
        except etree.XMLSyntaxError as exc:
            raise MalformedManifest(f"Invalid MPD document: {exc}") from exc

        if etree.QName(root).localname != "MPD":
            raise MalformedManifest(f"Unexpected root element <{etree.QName(root).localname}>")
        if etree.QName(root).namespace != DashParser.DASH_NS["mpd"]:
            raise MalformedManifest("MPD root is not in the urn:mpeg:dash:schema:mpd:2011 namespace")

        manifest_base = DashParser._apply_base_url(mpd_url, root)

        mpd_type = (root.get("type", "static") or "static").lower()
        is_live = mpd_type == "dynamic"

        media_duration = DashParser._optional_duration(root.get("mediaPresentationDuration"))
        min_update = DashParser._optional_duration(root.get("minimumUpdatePeriod"))

        periods = root.findall("./mpd:Period", namespaces=DashParser.DASH_NS)
        if not periods:
            raise EmptyManifest("MPD has no Period")
        if len(periods) > 1:
            raise UnsupportedFeature(f"Multi-period presentations are not supported ({len(periods)} periods)")
        period = periods[0]

        period_duration = DashParser._optional_duration(period.get("duration"))
        timing = _PresentationTiming(
            is_live=is_live,
            total_duration=period_duration or media_duration,
            availability_start=DashParser._parse_datetime(root.get("availabilityStartTime")),
            period_start=DashParser._optional_duration(period.get("start")) or 0.0,
            time_shift_buffer=DashParser._optional_duration(root.get("timeShiftBufferDepth")),
            now=time.time() if now is None else now,
        )
        period_base = DashParser._apply_base_url(manifest_base, period)

        variants: List[Variant] = []
        audio_tracks: List[MediaTrack] = []
        subtitle_tracks: List[MediaTrack] = []

        for adaptation_set in period.findall("./mpd:AdaptationSet", namespaces=DashParser.DASH_NS):
            if DashParser._is_trick_play(adaptation_set):
                logger.debug("Skipping trick-play adaptation set %s", adaptation_set.get("id"))
                continue

            adaptation_base = DashParser._apply_base_url(period_base, adaptation_set)

            if DashParser._is_text(adaptation_set):
                subtitle_tracks.extend(DashParser._text_tracks(adaptation_set, adaptation_base))
                continue

            for representation in adaptation_set.findall(
                "./mpd:Representation", namespaces=DashParser.DASH_NS
            ):
                variant = DashParser._parse_representation(
                    root,
                    period,
                    adaptation_set,
                    representation,
                    base_url=DashParser._apply_base_url(adaptation_base, representation),
                    timing=timing,
                    index=len(variants),
                )
                if variant is None:
                    continue
                variants.append(variant)
                if not variant.is_video:
                    audio_tracks.append(
                        MediaTrack(
                            kind="audio",
                            group_id=adaptation_set.get("id") or variant.id,
                            language=variant.language,
                            name=adaptation_set.get("label") or variant.id,
                        )
                    )

        if not variants:
            raise EmptyManifest("MPD has no playable representation")

        tracks = tuple(audio_tracks)
        variants = [
            replace(variant, audio_tracks=tracks) if variant.is_video else variant
            for variant in variants
        ]

        logger.debug("Parsed MPD %s with %d representations", mpd_url, len(variants))
        return Manifest(
            format=ManifestFormat.DASH,
            url=mpd_url,
            variants=tuple(variants),
            stream_type=StreamType.LIVE if is_live else StreamType.ON_DEMAND,
            duration=media_duration,
            refresh_interval=min_update,
            subtitle_tracks=tuple(subtitle_tracks),
        )

    # ------------------------------------------------------------------
    # Representations
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_representation(
        root: etree._Element,
        period: etree._Element,
        adaptation_set: etree._Element,
        representation: etree._Element,
        *,
        base_url: str,
        timing: _PresentationTiming,
        index: int,
    ) -> Optional[Variant]:
        rep_id = representation.get("id") or ""
        if not rep_id:
            return None

        is_video, is_audio = DashParser._classify_track(adaptation_set, representation)
        if not is_video and not is_audio:
            return None

        bandwidth = DashParser._safe_int(representation.get("bandwidth"), default=0)

        template = DashParser._resolve_segment_template([root, period, adaptation_set, representation])
        segment_list = DashParser._find_first_in_hierarchy(
            [representation, adaptation_set, period], "SegmentList"
        )
        segment_base = DashParser._find_first_in_hierarchy(
            [representation, adaptation_set, period], "SegmentBase"
        )

        if template and template.media:
            init_url, segments = DashParser._parse_segment_template(
                template, rep_id=rep_id, base_url=base_url, bandwidth=bandwidth, timing=timing
            )
        elif segment_list is not None:
            init_url, segments = DashParser._parse_segment_list(segment_list, base_url)
        elif segment_base is not None:
            init_url, segments = DashParser._parse_segment_base(
                segment_base, base_url, timing.total_duration
            )
        else:
            # Representation without known segment addressing
            return None

        if not segments and not timing.is_live:
            return None

        init_segment = None
        if init_url:
            first_sequence = segments[0].sequence if segments else 0
            init_segment = Segment(url=init_url, duration=0.0, sequence=first_sequence)

        return Variant(
            id=rep_id,
            bandwidth=bandwidth,
            width=DashParser._maybe_int(representation.get("width")),
            height=DashParser._maybe_int(representation.get("height")),
            codecs=representation.get("codecs") or adaptation_set.get("codecs", ""),
            content_type="video" if is_video else "audio",
            language=representation.get("lang") or adaptation_set.get("lang"),
            segments=tuple(segments),
            key=DashParser._resolve_protection(adaptation_set, representation),
            playlist_url=None,
            init_segment=init_segment,
            index=index,
        )

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _get_child(element: Optional[etree._Element], tag: str) -> Optional[etree._Element]:
        if element is None:
            return None
        return element.find(f"./mpd:{tag}", namespaces=DashParser.DASH_NS)

    @staticmethod
    def _apply_base_url(current_base: str, element: Optional[etree._Element]) -> str:
        base_elem = DashParser._get_child(element, "BaseURL")
        if base_elem is None or not base_elem.text:
            return current_base
        return DashParser._resolve_url(current_base, base_elem.text.strip())

    @staticmethod
    def _resolve_url(base: str, relative: str) -> str:
        parsed = urlparse(relative)
        if parsed.scheme:
            return relative
        return urljoin(base, relative)

    @staticmethod
    def _safe_int(value: Optional[str], default: int = 0) -> int:
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def _maybe_int(value: Optional[str]) -> Optional[int]:
        if value in (None, ""):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _is_trick_play(adaptation_set: etree._Element) -> bool:
        for prop in adaptation_set.findall("./mpd:EssentialProperty", namespaces=DashParser.DASH_NS):
            if prop.get("schemeIdUri") == DashParser.TRICKMODE_SCHEME:
                return True
        return False

    @staticmethod
    def _is_text(adaptation_set: etree._Element) -> bool:
        content_type = (adaptation_set.get("contentType") or "").lower()
        mime_type = (adaptation_set.get("mimeType") or "").lower()
        if content_type == "text":
            return True
        return any(text_key in mime_type for text_key in ("text", "ttml", "vtt", "srt"))

    @staticmethod
    def _text_tracks(adaptation_set: etree._Element, base_url: str) -> List[MediaTrack]:
        tracks: List[MediaTrack] = []
        for representation in adaptation_set.findall(
            "./mpd:Representation", namespaces=DashParser.DASH_NS
        ):
            rep_base = DashParser._apply_base_url(base_url, representation)
            tracks.append(
                MediaTrack(
                    kind="subtitles",
                    group_id=adaptation_set.get("id"),
                    language=representation.get("lang") or adaptation_set.get("lang"),
                    name=adaptation_set.get("label") or representation.get("id"),
                    uri=rep_base if rep_base != base_url else None,
                )
            )
        return tracks

    @staticmethod
    def _classify_track(
        adaptation_set: etree._Element, representation: etree._Element
    ) -> tuple[bool, bool]:
        mime_candidates = [
            (representation.get("mimeType") or "").lower(),
            (adaptation_set.get("mimeType") or "").lower(),
        ]
        content_candidates = [
            (representation.get("contentType") or "").lower(),
            (adaptation_set.get("contentType") or "").lower(),
        ]

        is_video = any("video" in value for value in mime_candidates) or any(
            value == "video" for value in content_candidates
        )
        is_audio = any("audio" in value for value in mime_candidates) or any(
            value == "audio" for value in content_candidates
        )
        return is_video, is_audio

    @staticmethod
    def _resolve_segment_template(
        elements: List[Optional[etree._Element]],
    ) -> Optional[_ResolvedSegmentTemplate]:
        merged: dict[str, str] = {}
        timeline: Optional[etree._Element] = None

        for element in elements:
            template = DashParser._get_child(element, "SegmentTemplate")
            if template is None:
                continue
            merged.update(template.attrib)
            timeline_candidate = DashParser._get_child(template, "SegmentTimeline")
            if timeline_candidate is not None:
                timeline = timeline_candidate

        if not merged and timeline is None:
            return None

        timescale = DashParser._safe_int(merged.get("timescale"), default=1)
        return _ResolvedSegmentTemplate(
            initialization=merged.get("initialization"),
            media=merged.get("media"),
            timescale=timescale if timescale > 0 else 1,
            duration=DashParser._maybe_int(merged.get("duration")),
            start_number=DashParser._safe_int(merged.get("startNumber"), default=1),
            presentation_time_offset=DashParser._safe_int(
                merged.get("presentationTimeOffset"), default=0
            ),
            timeline=timeline,
        )

    @staticmethod
    def _find_first_in_hierarchy(
        elements: List[Optional[etree._Element]], tag: str
    ) -> Optional[etree._Element]:
        for element in elements:
            found = DashParser._get_child(element, tag)
            if found is not None:
                return found
        return None

    # ------------------------------------------------------------------
    # Segment parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_segment_template(
        template: _ResolvedSegmentTemplate,
        *,
        rep_id: str,
        base_url: str,
        bandwidth: int,
        timing: _PresentationTiming,
    ) -> tuple[str, List[Segment]]:
        init_url = ""
        if template.initialization:
            init_path = DashParser._fill_template(
                template.initialization,
                rep_id=rep_id,
                number=template.start_number,
                time=0,
                bandwidth=bandwidth,
            )
            if init_path:
                init_url = DashParser._resolve_url(base_url, init_path)

        if template.timeline is not None:
            segments = DashParser._parse_segment_timeline(
                template, rep_id=rep_id, base_url=base_url, bandwidth=bandwidth, is_live=timing.is_live
            )
        elif template.duration:
            first, count = DashParser._template_number_range(template, timing)
            segments = DashParser._expand_template(
                template,
                numbers=range(first, first + count),
                rep_id=rep_id,
                base_url=base_url,
                bandwidth=bandwidth,
            )
        else:
            raise MalformedManifest(
                f"SegmentTemplate for {rep_id} has neither @duration nor SegmentTimeline"
            )

        return init_url, segments

    @staticmethod
    def _template_number_range(
        template: _ResolvedSegmentTemplate, timing: _PresentationTiming
    ) -> Tuple[int, int]:
        """First segment number and segment count of a duration-based template."""
        duration_units = template.duration or 0
        segment_duration = duration_units / template.timescale

        if timing.is_live and timing.availability_start is not None:
            elapsed = timing.now - timing.availability_start - timing.period_start
            available = max(0, math.floor(elapsed / segment_duration))
            if timing.time_shift_buffer:
                window = max(1, math.floor(timing.time_shift_buffer / segment_duration))
            else:
                window = DashParser.LIVE_WINDOW_SEGMENTS
            count = min(window, available)
            return template.start_number + available - count, count

        if timing.is_live:
            raise MalformedManifest("Dynamic MPD with a @duration SegmentTemplate needs availabilityStartTime")
        if not timing.total_duration:
            raise MalformedManifest(
                "SegmentTemplate with @duration needs mediaPresentationDuration or Period@duration"
            )
        return template.start_number, max(1, math.ceil(timing.total_duration / segment_duration))

    @staticmethod
    def _expand_template(
        template: _ResolvedSegmentTemplate,
        *,
        numbers: range,
        rep_id: str,
        base_url: str,
        bandwidth: int,
    ) -> List[Segment]:
        duration_units = template.duration or 0
        segments: List[Segment] = []
        for number in numbers:
            # Exact integer media time; the float division happens once.
            offset_units = (number - template.start_number) * duration_units
            media_path = DashParser._fill_template(
                template.media or "",
                rep_id=rep_id,
                number=number,
                time=offset_units + template.presentation_time_offset,
                bandwidth=bandwidth,
            )
            segments.append(
                Segment(
                    url=DashParser._resolve_url(base_url, media_path),
                    duration=duration_units / template.timescale,
                    sequence=number,
                    start_time=offset_units / template.timescale,
                )
            )
        return segments

    @staticmethod
    def _parse_segment_timeline(
        template: _ResolvedSegmentTemplate,
        *,
        rep_id: str,
        base_url: str,
        bandwidth: int,
        is_live: bool,
    ) -> List[Segment]:
        timeline = template.timeline
        if timeline is None or not template.media:
            return []

        segments: List[Segment] = []
        timescale = template.timescale
        number = template.start_number
        current_time = template.presentation_time_offset
        last_duration = template.duration

        for s in timeline.findall("./mpd:S", namespaces=DashParser.DASH_NS):
            if s.get("t") is not None:
                current_time = DashParser._safe_int(s.get("t"), default=current_time)

            d_value = s.get("d")
            if d_value is not None:
                duration_units = DashParser._safe_int(d_value, default=0)
                last_duration = duration_units if duration_units > 0 else last_duration
            elif last_duration:
                duration_units = last_duration
            else:
                raise MalformedManifest("SegmentTimeline entry without duration")

            if duration_units <= 0:
                raise MalformedManifest(f"SegmentTimeline entry with invalid duration {d_value!r}")

            repeat = DashParser._safe_int(s.get("r"), default=0)
            if repeat < 0:
                repeat = DashParser.MAX_TIMELINE_REPEAT if is_live else 0

            for _ in range(repeat + 1):
                media_path = DashParser._fill_template(
                    template.media,
                    rep_id=rep_id,
                    number=number,
                    time=current_time,
                    bandwidth=bandwidth,
                )
                segments.append(
                    Segment(
                        url=DashParser._resolve_url(base_url, media_path),
                        duration=duration_units / timescale,
                        sequence=number,
                        start_time=(current_time - template.presentation_time_offset) / timescale,
                    )
                )
                number += 1
                current_time += duration_units

        return segments

    @staticmethod
    def _parse_segment_list(
        segment_list: etree._Element, base_url: str
    ) -> tuple[str, List[Segment]]:
        init_url = ""
        init_elem = DashParser._get_child(segment_list, "Initialization")
        if init_elem is not None and init_elem.get("sourceURL"):
            init_url = DashParser._resolve_url(base_url, init_elem.get("sourceURL"))

        timescale = DashParser._safe_int(segment_list.get("timescale"), default=1) or 1
        default_duration_units = DashParser._maybe_int(segment_list.get("duration"))
        start_number = DashParser._safe_int(segment_list.get("startNumber"), default=1)

        segments: List[Segment] = []
        start_units = 0
        for idx, seg_elem in enumerate(
            segment_list.findall("./mpd:SegmentURL", namespaces=DashParser.DASH_NS)
        ):
            media_attr = seg_elem.get("media")
            media_url = DashParser._resolve_url(base_url, media_attr) if media_attr else base_url

            duration_units = DashParser._maybe_int(seg_elem.get("duration")) or default_duration_units or 0
            segments.append(
                Segment(
                    url=media_url,
                    duration=duration_units / timescale,
                    sequence=start_number + idx,
                    start_time=start_units / timescale,
                    byte_range=DashParser._parse_media_range(seg_elem.get("mediaRange")),
                )
            )
            start_units += duration_units

        return init_url, segments

    @staticmethod
    def _parse_segment_base(
        segment_base: etree._Element,
        base_url: str,
        total_duration: Optional[float],
    ) -> tuple[str, List[Segment]]:
        init_url = ""
        init_elem = DashParser._get_child(segment_base, "Initialization")
        if init_elem is not None and init_elem.get("sourceURL"):
            init_url = DashParser._resolve_url(base_url, init_elem.get("sourceURL"))

        segments: List[Segment] = []
        if total_duration is not None:
            segments.append(Segment(url=base_url, duration=total_duration, sequence=1))

        return init_url, segments

    @staticmethod
    def _parse_media_range(value: Optional[str]) -> Optional[ByteRange]:
        if not value:
            return None
        first, _, last = value.partition("-")
        try:
            start, end = int(first), int(last)
        except ValueError as exc:
            raise MalformedManifest(f"Invalid mediaRange {value!r}") from exc
        if start < 0 or end < start:
            raise MalformedManifest(f"Invalid mediaRange {value!r}")
        return ByteRange(length=end - start + 1, offset=start)

    # ------------------------------------------------------------------
    # Misc helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fill_template(
        template: str,
        *,
        rep_id: str,
        number: int,
        time: int,
        bandwidth: int,
    ) -> str:
        if not template:
            return ""

        result = template.replace("$$", "\x00")
        result = result.replace("$RepresentationID$", rep_id)
        result = result.replace("$Number$", str(number))
        result = result.replace("$Time$", str(time))
        result = result.replace("$Bandwidth$", str(bandwidth))

        pattern = r"\$(\w+)%(0?)(\d*)([diouxX])\$"
        values = {"Number": number, "Time": time, "Bandwidth": bandwidth}

        def replace(match: re.Match[str]) -> str:
            var_name, zero_flag, width_str, conversion = match.groups()
            value = values.get(var_name)
            if value is None:
                return match.group(0)
            return f"{value:{zero_flag}{width_str}{conversion if conversion in 'xXo' else 'd'}}"

        result = re.sub(pattern, replace, result)
        return result.replace("\x00", "$")

    @staticmethod
    def _resolve_protection(
        adaptation_set: etree._Element, representation: etree._Element
    ) -> Optional[KeyInfo]:
        for element in (representation, adaptation_set):
            for cp in element.findall("./mpd:ContentProtection", namespaces=DashParser.DASH_NS):
                scheme = (cp.get("schemeIdUri") or "").lower()
                if scheme != "urn:mpeg:dash:mp4protection:2011":
                    continue
                kid = cp.get("{urn:mpeg:cenc:2013}default_KID") or cp.get("default_KID")
                return KeyInfo(
                    method=(cp.get("value") or "cenc").lower(),
                    kid=kid.replace("-", "").lower() if kid else None,
                )

            # Only DRM-system descriptors present: still encrypted
            for cp in element.findall("./mpd:ContentProtection", namespaces=DashParser.DASH_NS):
                kid = cp.get("{urn:mpeg:cenc:2013}default_KID")
                return KeyInfo(method="cenc", kid=kid.replace("-", "").lower() if kid else None)
        return None

    @staticmethod
    def _optional_duration(value: Optional[str]) -> Optional[float]:
        return DashParser._parse_duration(value) if value else None

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[float]:
        if not value:
            return None
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedManifest(f"Invalid availabilityStartTime {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()

    @staticmethod
    def _parse_duration(duration_str: str) -> float:
        pattern = (
            r"P"
            r"(?:(?P<years>\d+)Y)?"
            r"(?:(?P<months>\d+)M)?"
            r"(?:(?P<days>\d+)D)?"
            r"(?:T"
            r"(?:(?P<hours>\d+)H)?"
            r"(?:(?P<minutes>\d+)M)?"
            r"(?:(?P<seconds>[\d.]+)S)?"
            r")?"
        )
        match = re.fullmatch(pattern, duration_str.strip())
        if not match:
            raise MalformedManifest(f"Invalid ISO-8601 duration {duration_str!r}")

        years = int(match.group("years") or 0)
        months = int(match.group("months") or 0)
        days = int(match.group("days") or 0)
        hours = int(match.group("hours") or 0)
        minutes = int(match.group("minutes") or 0)
        seconds = float(match.group("seconds") or 0)

        total_days = years * 365 + months * 30 + days
        return total_days * 86400 + hours * 3600 + minutes * 60 + seconds
