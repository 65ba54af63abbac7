"""Shared fixtures: a scripted HTTP transport and a virtual clock."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from knowrithm.client import KnowrithmClient
from knowrithm.config import KnowrithmConfig


class VirtualClock:
    """Monotonic clock that only moves when the fake sleep is awaited."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedTransport:
    """Replays a script of responses or exceptions and records every request.

    Script items may be ``httpx.Response`` objects, exceptions to raise, or
    callables taking the request and returning a response.
    """

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(request)
        return item

    @property
    def calls(self) -> int:
        return len(self.requests)


async def chunked(chunks: list[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def sse_response(chunks: list[bytes], status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"Content-Type": "text/event-stream"},
        content=chunked(chunks),
    )


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def make_client(clock: VirtualClock) -> Callable[..., tuple[KnowrithmClient, ScriptedTransport]]:
    def factory(
        script: list[Any],
        config: KnowrithmConfig | None = None,
        **overrides: Any,
    ) -> tuple[KnowrithmClient, ScriptedTransport]:
        transport = ScriptedTransport(script)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
        client = KnowrithmClient(
            config or KnowrithmConfig(base_url="https://api.test"),
            api_key="key",
            api_secret="secret",
            http_client=http_client,
            sleep=clock.sleep,
            clock=clock,
            **overrides,
        )
        return client, transport

    return factory
