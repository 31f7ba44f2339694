"""Dataclasses and enums for the vodstream playback pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Tuple

if TYPE_CHECKING:
    from .errors import ConstraintsRelaxed


class ManifestFormat(str, Enum):
    """Adaptive streaming manifest flavours."""

    HLS = "hls"
    DASH = "dash"


class StreamType(str, Enum):
    ON_DEMAND = "vod"
    LIVE = "live"


class StreamStatus(str, Enum):
    """Lifecycle status of a playback session."""

    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class ByteRange:
    """A byte window inside a segment resource."""

    length: int
    offset: int = 0

    @property
    def end(self) -> int:
        """Inclusive index of the last byte."""
        return self.offset + max(self.length - 1, 0)

    def header(self) -> str:
        return f"bytes={self.offset}-{self.end}"


@dataclass(frozen=True)
class KeyInfo:
    """Encryption key reference as declared by a manifest."""

    method: str
    uri: Optional[str] = None
    iv: Optional[bytes] = None
    kid: Optional[str] = None

    @property
    def is_encrypted(self) -> bool:
        return self.method.upper() != "NONE"


@dataclass(frozen=True)
class Segment:
    """A single fetchable media unit."""

    url: str
    duration: float
    sequence: int
    start_time: float = 0.0
    byte_range: Optional[ByteRange] = None
    key: Optional[KeyInfo] = None


@dataclass(frozen=True)
class MediaTrack:
    """Alternative audio or subtitle rendition."""

    kind: str
    group_id: Optional[str] = None
    language: Optional[str] = None
    name: Optional[str] = None
    uri: Optional[str] = None
    default: bool = False


@dataclass(frozen=True)
class Variant:
    """One rendition of a title.

    ``segments`` is ``None`` for HLS master playlist entries whose media
    playlist has not been fetched yet.
    """

    id: str
    bandwidth: int
    width: Optional[int] = None
    height: Optional[int] = None
    codecs: str = ""
    content_type: str = "video"
    language: Optional[str] = None
    audio_group: Optional[str] = None
    subtitle_group: Optional[str] = None
    audio_tracks: Tuple[MediaTrack, ...] = ()
    segments: Optional[Tuple[Segment, ...]] = None
    key: Optional[KeyInfo] = None
    playlist_url: Optional[str] = None
    init_segment: Optional[Segment] = None
    index: int = 0

    @property
    def resolution(self) -> Optional[Tuple[int, int]]:
        if self.width and self.height:
            return (self.width, self.height)
        return None

    @property
    def pixels(self) -> int:
        return (self.width or 0) * (self.height or 0)

    @property
    def is_video(self) -> bool:
        return self.content_type == "video"

    @property
    def is_resolved(self) -> bool:
        return self.segments is not None


@dataclass(frozen=True)
class Manifest:
    """Normalized representation of an HLS playlist or a DASH MPD."""

    format: ManifestFormat
    url: str
    variants: Tuple[Variant, ...]
    stream_type: StreamType = StreamType.ON_DEMAND
    duration: Optional[float] = None
    refresh_interval: Optional[float] = None
    subtitle_tracks: Tuple[MediaTrack, ...] = ()

    @property
    def is_live(self) -> bool:
        return self.stream_type is StreamType.LIVE


@dataclass(frozen=True)
class EncryptionKey:
    """Resolved key material for one segment."""

    key: bytes
    method: str
    iv: bytes
    kid: Optional[str] = None


@dataclass(frozen=True)
class DecryptedChunk:
    """Decrypted media bytes emitted to the caller."""

    sequence: int
    data: bytes
    duration: float = 0.0
    is_init: bool = False
    gap_before: bool = False


@dataclass(frozen=True)
class SelectionConstraints:
    """Caller constraints for picking a variant."""

    max_width: Optional[int] = None
    max_height: Optional[int] = None
    max_bandwidth: Optional[int] = None
    audio_language: Optional[str] = None
    subtitle_language: Optional[str] = None


@dataclass(frozen=True)
class Selection:
    """Outcome of variant selection."""

    variant: Variant
    audio_track: Optional[MediaTrack] = None
    subtitle_track: Optional[MediaTrack] = None
    advisory: Optional["ConstraintsRelaxed"] = None

    @property
    def relaxed(self) -> bool:
        return self.advisory is not None


@dataclass
class RefreshPolicy:
    """How live manifests are re-fetched."""

    poll_interval: float = 4.0
    interval: Optional[float] = None
    max_idle_refreshes: Optional[int] = None
    max_failures: Optional[int] = None
    backoff: float = 2.0


@dataclass
class StreamConfig:
    """Configuration for a playback session."""

    manifest_url: str
    format_hint: Optional[ManifestFormat] = None
    constraints: SelectionConstraints = field(default_factory=SelectionConstraints)
    strict_selection: bool = False
    prefetch_window: int = 3
    max_retries: int = 3
    retry_backoff: float = 0.5
    refresh: RefreshPolicy = field(default_factory=RefreshPolicy)
    include_init: bool = True
    resume_after: Optional[int] = None
    headers: Dict[str, str] | None = None
    key_map: Optional[Dict[str, str]] = None
    mp4decrypt_path: Optional[str] = None
    request_timeout: float = 60.0


@dataclass
class StreamInfo:
    """Snapshot of a playback session."""

    manifest_url: str
    status: StreamStatus
    is_live: bool
    variant_id: Optional[str] = None
    bandwidth: Optional[int] = None
    codecs: Optional[str] = None
    resolution: Optional[tuple[int, int]] = None
    audio_language: Optional[str] = None
    subtitle_language: Optional[str] = None
    relaxed: bool = False
    error: Optional[str] = None
    last_sequence: Optional[int] = None
