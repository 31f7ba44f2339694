"""Segment decryption and the session-scoped key cache."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from .downloader import HttpClient, get_with_retry
from .errors import (
    CryptoError,
    InvalidPadding,
    KeySizeMismatch,
    KeyUnavailable,
    TransportError,
    UnsupportedCipher,
)
from .models import EncryptionKey, KeyInfo, Segment

logger = logging.getLogger(__name__)

AES_128_KEY_SIZE = 16
CENC_METHODS = ("cenc", "cbcs", "cens", "cbc1")


def sequence_iv(sequence: int) -> bytes:
    """Default HLS IV: the sequence number as a big-endian 128-bit integer."""
    return sequence.to_bytes(AES.block_size, "big")


class KeyCache:
    """Key bytes of one playback session, keyed by key URI.

    Each URI is fetched at most once; concurrent lookups of a URI whose fetch
    is still running await the same task. Transport failures are retried up
    to ``max_retries`` times; a fetch that still fails is dropped so the next
    lookup starts over. Successful entries live until the cache is closed.
    Static ``key_map`` entries (KID -> hex key) serve CENC content, which
    carries no key URI.
    """

    def __init__(
        self,
        client: HttpClient,
        key_map: Optional[Dict[str, str]] = None,
        *,
        max_retries: int = 3,
        backoff: float = 0.5,
    ) -> None:
        self._client = client
        self._max_retries = max_retries
        self._backoff = backoff
        self._entries: Dict[str, asyncio.Task] = {}
        self._static: Dict[str, bytes] = {
            self._normalize_kid(kid): self._parse_hex_key(key) for kid, key in (key_map or {}).items()
        }
        self._closed = False

    @staticmethod
    def _normalize_kid(kid: str) -> str:
        return kid.replace("-", "").strip().lower()

    @staticmethod
    def _parse_hex_key(key: str) -> bytes:
        key = key.strip().lower()
        if key.startswith("0x"):
            key = key[2:]
        if len(key) not in (32, 64):  # 16 or 32 bytes
            raise ValueError("Keys must be 16 or 32 bytes expressed in hexadecimal characters")
        return bytes.fromhex(key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, uri: str) -> bool:
        task = self._entries.get(uri)
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    async def get(self, uri: str, *, key_size: int = AES_128_KEY_SIZE) -> bytes:
        """Return the key bytes behind ``uri``, fetching them on first use."""
        if self._closed:
            raise RuntimeError("Key cache is closed")

        task = self._entries.get(uri)
        if task is None:
            task = asyncio.create_task(self._fetch(uri, key_size), name=f"key-{uri}")
            self._entries[uri] = task
        try:
            # shield: a cancelled waiter must not cancel the shared fetch
            return await asyncio.shield(task)
        except Exception:
            if self._entries.get(uri) is task:
                del self._entries[uri]
            raise

    def get_static(self, kid: Optional[str]) -> Optional[bytes]:
        """Key registered for a CENC KID; a single registered key is used for any KID."""
        if kid:
            key = self._static.get(self._normalize_kid(kid))
            if key is not None:
                return key
        if len(self._static) == 1:
            return next(iter(self._static.values()))
        return None

    async def _fetch(self, uri: str, key_size: int) -> bytes:
        logger.debug("Fetching key %s", uri)
        try:
            response = await get_with_retry(
                self._client,
                uri,
                max_retries=self._max_retries,
                backoff=self._backoff,
                label=f"key {uri}",
            )
        except TransportError as exc:
            raise KeyUnavailable(f"Could not fetch key {uri}: {exc}") from exc
        key = response.body
        if len(key) != key_size:
            raise KeySizeMismatch(f"Key {uri} is {len(key)} bytes, expected {key_size}")
        return key

    async def close(self) -> None:
        """Cancel pending fetches and drop all key material."""
        self._closed = True
        pending = [task for task in self._entries.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._entries.clear()
        self._static.clear()


class Decryptor(Protocol):
    """Interface for decrypting one segment."""

    async def decrypt_segment(self, data: bytes, key: EncryptionKey) -> bytes:
        """Decrypt a segment payload."""


@dataclass
class PlaintextDecryptor:
    """Pass-through decryptor for unencrypted content."""

    async def decrypt_segment(self, data: bytes, key: EncryptionKey) -> bytes:
        return data


class Aes128CbcDecryptor:
    """AES-128 in CBC mode with PKCS#7 padding (HLS ``METHOD=AES-128``)."""

    async def decrypt_segment(self, data: bytes, key: EncryptionKey) -> bytes:
        if len(key.key) != AES_128_KEY_SIZE:
            raise KeySizeMismatch(f"AES-128 needs a 16 byte key, got {len(key.key)}")
        if len(data) == 0 or len(data) % AES.block_size:
            raise InvalidPadding(
                f"Ciphertext of {len(data)} bytes is not a whole number of {AES.block_size}-byte blocks"
            )

        cipher = AES.new(key.key, AES.MODE_CBC, key.iv)
        try:
            return unpad(cipher.decrypt(data), AES.block_size, style="pkcs7")
        except ValueError as exc:
            raise InvalidPadding(f"Padding validation failed: {exc}") from exc


class Mp4DecryptBinary:
    """Decrypt CENC fragments by invoking the external `mp4decrypt` binary."""

    def __init__(self, executable: str = "mp4decrypt") -> None:
        self.executable = executable
        if shutil.which(self.executable) is None:
            raise UnsupportedCipher(
                f"Could not find '{self.executable}' in PATH. Install Bento4 or provide the full path."
            )

    async def decrypt_segment(self, data: bytes, key: EncryptionKey) -> bytes:
        if len(data) < 8:  # smallest possible MP4 box header
            raise CryptoError(f"Data too small for an MP4 fragment: {len(data)} bytes")
        if not key.kid:
            raise UnsupportedCipher("CENC content without a default KID")

        command = [self.executable, "--key", f"{key.kid}:{key.key.hex()}", "-", "-"]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CryptoError(f"Failed to execute mp4decrypt: {exc}") from exc

        try:
            stdout, stderr = await process.communicate(input=data)
        except asyncio.CancelledError:
            process.kill()
            raise

        if process.returncode != 0:
            raise CryptoError(
                f"mp4decrypt failed (exit code {process.returncode}): "
                f"{stderr.decode(errors='ignore').strip()}"
            )
        if not stdout:
            raise CryptoError(f"mp4decrypt produced no output for {len(data)} input bytes")
        return stdout


def build_decryptor(method: str, *, mp4decrypt_path: Optional[str] = None) -> Decryptor:
    """Factory for decryptor instances."""
    normalized = method.lower()
    if normalized == "none":
        return PlaintextDecryptor()
    if normalized == "aes-128":
        return Aes128CbcDecryptor()
    if normalized in CENC_METHODS:
        return Mp4DecryptBinary(executable=mp4decrypt_path or "mp4decrypt")
    raise UnsupportedCipher(f"Unable to decrypt cipher {method}")


async def resolve_key(key_info: KeyInfo, sequence: int, key_cache: KeyCache) -> EncryptionKey:
    """Turn a manifest key reference into key material for one segment."""
    method = key_info.method.lower()
    if method == "aes-128":
        if not key_info.uri:
            raise UnsupportedCipher("AES-128 key reference without a URI")
        key = await key_cache.get(key_info.uri, key_size=AES_128_KEY_SIZE)
    elif method in CENC_METHODS:
        key = key_cache.get_static(key_info.kid)
        if key is None:
            raise UnsupportedCipher(f"No key registered for KID {key_info.kid}")
    else:
        raise UnsupportedCipher(f"Unable to decrypt cipher {key_info.method}")

    return EncryptionKey(
        key=key,
        method=key_info.method,
        iv=key_info.iv or sequence_iv(sequence),
        kid=key_info.kid,
    )


async def decrypt(
    segment: Segment,
    data: bytes,
    key_cache: KeyCache,
    *,
    variant_key: Optional[KeyInfo] = None,
    decryptor: Optional[Decryptor] = None,
    mp4decrypt_path: Optional[str] = None,
) -> bytes:
    """Decrypt one segment's bytes.

    The segment's own key reference wins over ``variant_key``. Clear-text
    segments are returned unchanged. Every segment decrypts independently.
    """
    key_info = segment.key or variant_key
    if key_info is None or not key_info.is_encrypted:
        return data

    key = await resolve_key(key_info, segment.sequence, key_cache)
    decryptor = decryptor or build_decryptor(key_info.method, mp4decrypt_path=mp4decrypt_path)
    try:
        return await decryptor.decrypt_segment(data, key)
    except CryptoError as exc:
        logger.error("Decryption failed for segment %s: %s", segment.sequence, exc)
        raise
