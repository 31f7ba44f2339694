"""HTTP collaborator used for manifests, keys and segments."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import aiohttp

from .errors import TransportError
from .models import ByteRange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    """Body of a completed GET.

    ``url`` is the final URL after redirects, which is the base for relative
    references inside a manifest.
    """

    url: str
    body: bytes
    content_type: str = ""


class HttpClient(Protocol):
    """Interface the pipeline needs from an HTTP client."""

    async def get(self, url: str, *, byte_range: Optional[ByteRange] = None) -> HttpResponse:
        """GET ``url``, optionally restricted to ``byte_range``.

        Raises :class:`TransportError` on any network or HTTP failure.
        """


async def get_with_retry(
    client: HttpClient,
    url: str,
    *,
    byte_range: Optional[ByteRange] = None,
    max_retries: int = 3,
    backoff: float = 0.5,
    label: str = "",
) -> HttpResponse:
    """GET through ``client``, retrying transport failures with exponential backoff.

    The last :class:`TransportError` propagates once ``max_retries`` retries
    are used up.
    """
    label = label or url
    attempt = 0
    while True:
        try:
            return await client.get(url, byte_range=byte_range)
        except TransportError as exc:
            attempt += 1
            if attempt > max_retries:
                logger.error("Giving up on %s after %d attempts: %s", label, attempt, exc)
                raise
            delay = backoff * 2 ** (attempt - 1)
            logger.warning(
                "Fetch of %s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                max_retries + 1,
                delay,
                exc,
            )
            await asyncio.sleep(delay)


class SegmentDownloader:
    """aiohttp-backed :class:`HttpClient`."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
    ):
        """
        Initialize downloader.

        Args:
            session: Optional aiohttp session. If None, a new one will be created.
            headers: Headers sent with every request of an owned session.
            timeout: Socket read timeout in seconds for an owned session.
        """
        self.session = session
        self._own_session = session is None
        self._headers = headers or {}
        self._timeout = timeout

    async def __aenter__(self):
        if self._own_session:
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=self._timeout)
            self.session = aiohttp.ClientSession(headers=self._headers, timeout=timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._own_session and self.session:
            await self.session.close()
            self.session = None

    async def get(self, url: str, *, byte_range: Optional[ByteRange] = None) -> HttpResponse:
        """
        Download a URL.

        Args:
            url: URL to download
            byte_range: Optional byte window, sent as a ``Range`` header

        Returns:
            The response body with the final URL and content type
        """
        if self.session is None:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")

        headers = {"Range": byte_range.header()} if byte_range else None
        try:
            async with self.session.get(url, headers=headers) as response:
                response.raise_for_status()
                body = await response.read()
                final_url = str(response.url)
                content_type = response.headers.get("Content-Type", "")
                status = response.status
        except aiohttp.ClientResponseError as exc:
            raise TransportError(url, exc.message, status=exc.status) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(url, str(exc) or exc.__class__.__name__) from exc

        if byte_range and status == 200:
            # Server ignored the Range header and sent the whole resource
            logger.debug("Range ignored by %s, slicing locally", url)
            body = body[byte_range.offset : byte_range.end + 1]

        return HttpResponse(url=final_url, body=body, content_type=content_type)
