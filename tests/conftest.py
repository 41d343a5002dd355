"""Shared test fixtures for the Connect handover chat test suite."""

from __future__ import annotations

import asyncio
import json
import os

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py picks up test values.
    """
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("AI_PROXY_BASE_URL", "http://proxy.test")
    os.environ.setdefault("CONNECT_AUTH_API_URL", "https://auth.example.test/start-chat")
    os.environ.setdefault("CONNECT_REGION", "us-east-1")


class FakeWebSocket:
    """In-memory stand-in for a ``websockets`` client connection."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self.fail_sends = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.fail_sends:
            raise ConnectionError("socket write failed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def push(self, frame: dict | str) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def end(self) -> None:
        self._inbox.put_nowait(None)

    def frames(self, topic: str) -> list[dict]:
        return [f for f in self.sent if f.get("topic") == topic]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def ws_connect(fake_ws):
    """A ``ws_connect`` replacement that records URLs and returns ``fake_ws``."""

    async def _connect(url: str):
        _connect.urls.append(url)
        return fake_ws

    _connect.urls = []
    return _connect


@pytest.fixture
def wait_until():
    """Poll *predicate* on the event loop until it holds or *timeout* passes."""

    async def _wait(predicate, timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
