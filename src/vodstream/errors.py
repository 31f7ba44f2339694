"""Exception hierarchy for vodstream."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import Variant


class VodStreamError(Exception):
    """Base class for all vodstream errors."""


# ----------------------------------------------------------------------
# Manifest parsing
# ----------------------------------------------------------------------


class ParseError(VodStreamError):
    """Raised when a manifest cannot be turned into a Manifest."""


class MalformedManifest(ParseError):
    """The manifest is structurally invalid."""


class UnsupportedFeature(ParseError):
    """The manifest uses a construct that is recognised but not implemented."""


class EmptyManifest(ParseError):
    """The manifest holds no playable content."""


# ----------------------------------------------------------------------
# Variant selection
# ----------------------------------------------------------------------


class SelectionError(VodStreamError):
    """Raised when no variant can be picked."""


class NoVariants(SelectionError):
    """The manifest has zero variants."""


class ConstraintsRelaxed(SelectionError):
    """No variant satisfied the constraints; the lowest-bandwidth one was used.

    This is advisory: callers may treat the attached ``variant`` as a valid
    choice or abort.
    """

    def __init__(self, message: str, variant: "Variant") -> None:
        super().__init__(message)
        self.variant = variant


# ----------------------------------------------------------------------
# Playback
# ----------------------------------------------------------------------


class PlaybackError(VodStreamError):
    """Error raised while producing the chunk sequence.

    ``last_delivered`` is the sequence of the last chunk handed to the caller
    before the failure, or ``None`` when nothing was delivered.
    """

    last_delivered: Optional[int] = None


class FetchError(PlaybackError):
    """Network failure while fetching a manifest, key or segment."""


class TransportError(FetchError):
    """A single HTTP request failed."""

    def __init__(self, url: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status = status


class SegmentUnavailable(FetchError):
    """A segment could not be fetched after all retries."""

    def __init__(self, index: int, url: str) -> None:
        super().__init__(f"Segment {index} unavailable: {url}")
        self.index = index
        self.url = url


class KeyUnavailable(FetchError):
    """Key material could not be fetched."""


class ManifestUnavailable(FetchError):
    """A manifest refresh kept failing."""


class CryptoError(PlaybackError):
    """A segment could not be decrypted."""


class InvalidPadding(CryptoError):
    """Padding validation failed: wrong key/IV or a corrupted segment."""


class KeySizeMismatch(CryptoError):
    """Key bytes do not match the cipher's key size."""


class UnsupportedCipher(CryptoError):
    """The encryption method cannot be handled."""
