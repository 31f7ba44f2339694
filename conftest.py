"""Shared fixtures: an in-memory HTTP collaborator."""

import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from vodstream.downloader import HttpResponse
from vodstream.errors import TransportError
from vodstream.models import ByteRange


class FakeHttpClient:
    """Serves canned bodies and records every request.

    ``failures[url]`` makes the next N requests for ``url`` fail;
    ``gates[url]`` holds a request until the event is set.
    """

    def __init__(self, routes: Optional[Dict[str, bytes]] = None) -> None:
        self.routes: Dict[str, bytes] = dict(routes or {})
        self.content_types: Dict[str, str] = {}
        self.failures: Dict[str, int] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.requests: List[Tuple[str, Optional[ByteRange]]] = []
        self.completed: List[str] = []
        self.cancelled: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, url: str, body, content_type: str = "") -> None:
        self.routes[url] = body.encode("utf-8") if isinstance(body, str) else body
        if content_type:
            self.content_types[url] = content_type

    def gate(self, url: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[url] = event
        return event

    def count(self, url: str) -> int:
        return sum(1 for requested, _ in self.requests if requested == url)

    async def get(self, url: str, *, byte_range: Optional[ByteRange] = None) -> HttpResponse:
        self.requests.append((url, byte_range))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            gate = self.gates.get(url)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)

            if self.failures.get(url, 0) > 0:
                self.failures[url] -= 1
                raise TransportError(url, "simulated failure", status=503)
            if url not in self.routes:
                raise TransportError(url, "not found", status=404)

            body = self.routes[url]
            if byte_range is not None:
                body = body[byte_range.offset : byte_range.end + 1]
            self.completed.append(url)
            return HttpResponse(url=url, body=body, content_type=self.content_types.get(url, ""))
        except asyncio.CancelledError:
            self.cancelled.append(url)
            raise
        finally:
            self.in_flight -= 1


@pytest.fixture
def http():
    return FakeHttpClient()
