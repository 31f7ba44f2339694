"""Pick one variant of a manifest under caller constraints."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .errors import ConstraintsRelaxed, NoVariants
from .models import Manifest, MediaTrack, Selection, SelectionConstraints, Variant

logger = logging.getLogger(__name__)


def _primary_subtag(language: Optional[str]) -> Optional[str]:
    if not language:
        return None
    return language.replace("_", "-").split("-", 1)[0].strip().lower() or None


def language_matches(candidate: Optional[str], wanted: Optional[str]) -> bool:
    """Case-insensitive match on the primary language subtag (``en`` ~ ``en-US``)."""
    wanted_tag = _primary_subtag(wanted)
    return wanted_tag is not None and _primary_subtag(candidate) == wanted_tag


def _satisfies(variant: Variant, constraints: SelectionConstraints) -> bool:
    if constraints.max_width is not None and variant.width and variant.width > constraints.max_width:
        return False
    if constraints.max_height is not None and variant.height and variant.height > constraints.max_height:
        return False
    if constraints.max_bandwidth is not None and variant.bandwidth > constraints.max_bandwidth:
        return False
    return True


def _offers_language(variant: Variant, language: str) -> bool:
    if language_matches(variant.language, language):
        return True
    return any(language_matches(track.language, language) for track in variant.audio_tracks)


def _pick_track(tracks: Iterable[MediaTrack], language: Optional[str]) -> Optional[MediaTrack]:
    tracks = list(tracks)
    if language:
        for track in tracks:
            if language_matches(track.language, language):
                return track
    for track in tracks:
        if track.default:
            return track
    return None


def select_variant(
    manifest: Manifest,
    constraints: Optional[SelectionConstraints] = None,
    *,
    strict: bool = False,
) -> Selection:
    """Choose the variant to play.

    Among variants satisfying the hard limits (resolution, bandwidth) the one
    with the highest bandwidth wins, then the highest resolution, then the
    first declared. A preferred audio language narrows the choice when any
    satisfying variant offers it.

    When nothing satisfies the limits the lowest-bandwidth variant is chosen
    and a :class:`ConstraintsRelaxed` advisory is attached to the result (or
    raised, with ``strict=True``).

    Raises:
        NoVariants: the manifest has no variants
    """
    constraints = constraints or SelectionConstraints()
    if not manifest.variants:
        raise NoVariants(f"Manifest {manifest.url} has no variants")

    pool: List[Variant] = [variant for variant in manifest.variants if variant.is_video]
    if not pool:
        pool = list(manifest.variants)

    advisory = None
    satisfying = [variant for variant in pool if _satisfies(variant, constraints)]
    if satisfying:
        if constraints.audio_language:
            preferred = [v for v in satisfying if _offers_language(v, constraints.audio_language)]
            if preferred:
                satisfying = preferred
            else:
                logger.info("No variant offers audio language %s", constraints.audio_language)
        # max() keeps the first of equal keys, i.e. declaration order
        chosen = max(satisfying, key=lambda variant: (variant.bandwidth, variant.pixels))
    else:
        chosen = min(pool, key=lambda variant: variant.bandwidth)
        advisory = ConstraintsRelaxed(
            f"No variant satisfies {constraints}; falling back to {chosen.id} "
            f"({chosen.bandwidth} bps)",
            chosen,
        )
        logger.warning("%s", advisory)
        if strict:
            raise advisory

    audio_track = _pick_track(chosen.audio_tracks, constraints.audio_language)

    subtitle_candidates = list(manifest.subtitle_tracks)
    if chosen.subtitle_group:
        grouped = [track for track in subtitle_candidates if track.group_id == chosen.subtitle_group]
        subtitle_candidates = grouped or subtitle_candidates
    subtitle_track = next(
        (
            track
            for track in subtitle_candidates
            if language_matches(track.language, constraints.subtitle_language)
        ),
        None,
    )

    logger.debug(
        "Selected variant %s (%s bps, %s)", chosen.id, chosen.bandwidth, chosen.resolution
    )
    return Selection(
        variant=chosen,
        audio_track=audio_track,
        subtitle_track=subtitle_track,
        advisory=advisory,
    )
