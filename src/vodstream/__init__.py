"""vodstream: decrypted, ordered media segments from HLS and DASH manifests."""

from .manifest import ManifestLoader, parse_manifest
from .models import DecryptedChunk, Manifest, SelectionConstraints, StreamConfig, Variant
from .selector import select_variant
from .session import PlaybackSession, stream_chunks

__all__ = [
    "DecryptedChunk",
    "Manifest",
    "ManifestLoader",
    "PlaybackSession",
    "SelectionConstraints",
    "StreamConfig",
    "Variant",
    "parse_manifest",
    "select_variant",
    "stream_chunks",
]
