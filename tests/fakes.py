"""Test doubles for the aiohttp session and token providers."""

from __future__ import annotations

import json
from typing import Any


class FakeResponse:
    """Stand-in for an aiohttp response used as an async context manager."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None


class FakeSession:
    """Records POSTs and replays scripted ``(status, body)`` pairs or exceptions."""

    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    def post(
        self,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: Any = None,
    ) -> FakeResponse:
        self.requests.append({"url": url, "json": json, "headers": dict(headers or {})})
        if not self._responses:
            raise AssertionError(f"Unexpected request to {url}")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        status, body = item
        return FakeResponse(status, body if isinstance(body, str) else _dumps(body))

    async def close(self) -> None:
        self.closed = True


def _dumps(body: Any) -> str:
    return json.dumps(body)


class TokenCounter:
    """Token provider that counts its calls and hands out tokens in order."""

    def __init__(self, *tokens: str) -> None:
        self._tokens = list(tokens) or ["token"]
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        return self._tokens[min(self.calls, len(self._tokens)) - 1]

