"""HTTP client for the push/pull sync endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from klettrack_sync.sync.errors import (
    ForbiddenError,
    InsecureEndpointError,
    ResponseDecodingError,
    TransportError,
    UnauthorizedError,
)
from klettrack_sync.sync.protocol import PullRequest, PullResult, PushRequest, PushResult

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str] | str]


async def _obtain_token(provider: TokenProvider) -> str:
    try:
        result = provider()
        if inspect.isawaitable(result):
            result = await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise UnauthorizedError(f"Unable to obtain an access token: {e}") from e
    if not isinstance(result, str) or not result:
        raise UnauthorizedError("Missing auth session.")
    return result


def _parse_error_reason(body: str) -> str | None:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return None


def retry_delay_seconds(attempt: int, max_delay: float, jitter: float | None = None) -> float:
    """Capped exponential backoff for transport retries (attempt is 1-based)."""
    base = min(2.0 ** max(0, attempt - 1), max(1.0, max_delay))
    return base + (random.uniform(0, 0.25) if jitter is None else jitter)


class SyncAPIClient:
    """
    Client for the sync authority's ``/push`` and ``/pull`` endpoints.

    Every request carries ``Authorization: Bearer <token>`` from
    ``token_provider``. A 401 triggers at most one call to
    ``force_refresh_token_provider`` and one retry with the fresh token; a
    second 401, or a 401 with no refresh provider, raises
    :class:`UnauthorizedError`.

    Usage:
        async with SyncAPIClient("https://sync.example.com/functions/v1/sync", get_token) as api:
            result = await api.push(PushRequest(device_id, cursor, tuple(mutations)))
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        force_refresh_token_provider: TokenProvider | None = None,
        timeout: float = 20.0,
        max_retry_attempts: int = 1,
        max_retry_delay: float = 8.0,
        require_https: bool = True,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Sync function base URL; ``/push`` and ``/pull`` are appended
            token_provider: Returns the current bearer token (sync or async)
            force_refresh_token_provider: Returns a freshly refreshed token after a 401
            timeout: Total per-request timeout in seconds
            max_retry_attempts: Attempts for transient transport failures (1 = no retry)
            max_retry_delay: Cap for the exponential backoff between attempts
            require_https: Refuse non-HTTPS endpoints
            session: Externally owned aiohttp session (not closed by this client)
        """
        base_url = base_url.rstrip("/")
        if require_https and not base_url.lower().startswith("https://"):
            raise InsecureEndpointError("Sync endpoint must use HTTPS.")

        self._base_url = base_url
        self._token_provider = token_provider
        self._force_refresh_token_provider = force_refresh_token_provider
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retry_attempts = max(1, max_retry_attempts)
        self._max_retry_delay = max(1.0, max_retry_delay)
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> SyncAPIClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def push(self, request: PushRequest) -> PushResult:
        """Send pending mutations; returns acknowledgments, conflicts and failures."""
        data = await self._post_json("push", request.to_dict())
        return PushResult.from_dict(data, base_cursor=request.base_cursor)

    async def pull(self, request: PullRequest) -> PullResult:
        """Fetch authoritative changes after ``request.cursor``."""
        data = await self._post_json("pull", request.to_dict())
        return PullResult.from_dict(data, cursor=request.cursor)

    async def _post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        token: str | None = None
        refreshed_after_unauthorized = False
        attempt = 0

        while True:
            try:
                if token is None:
                    token = await _obtain_token(self._token_provider)

                status, text = await self._send(path, body, token)

                if 200 <= status < 300:
                    return self._decode(text, status)

                if status == 401:
                    if not refreshed_after_unauthorized and self._force_refresh_token_provider:
                        logger.info("Sync %s returned 401, forcing token refresh", path)
                        token = await _obtain_token(self._force_refresh_token_provider)
                        refreshed_after_unauthorized = True
                        continue
                    raise UnauthorizedError()
                if status == 403:
                    raise ForbiddenError()

                reason = _parse_error_reason(text)
                raise TransportError(
                    reason or f"Sync request failed with HTTP {status}",
                    status_code=status,
                    body=text,
                    reason=reason,
                )

            except TransportError as e:
                attempt += 1
                if attempt >= self._max_retry_attempts or not e.is_retryable:
                    raise
                delay = retry_delay_seconds(attempt, self._max_retry_delay)
                logger.warning(
                    "Sync %s failed (%s), retrying in %.2fs (attempt %d/%d)",
                    path,
                    e,
                    delay,
                    attempt + 1,
                    self._max_retry_attempts,
                )
                if not refreshed_after_unauthorized:
                    token = None
                await asyncio.sleep(delay)

    async def _send(self, path: str, body: dict[str, Any], token: str) -> tuple[int, str]:
        if self._session is None:
            await self.connect()
        assert self._session is not None

        url = f"{self._base_url}/{path}"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }

        try:
            async with self._session.post(
                url, json=body, headers=headers, timeout=self._timeout
            ) as response:
                text = await response.text()
                return response.status, text
        except TimeoutError as e:
            raise TransportError(f"Sync {path} request timed out") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Connection error: {e}") from e

    @staticmethod
    def _decode(text: str, status: int) -> dict[str, Any]:
        try:
            data = json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            raise ResponseDecodingError(
                "Unable to decode sync response.", status_code=status, body=text
            ) from e
        if not isinstance(data, dict):
            raise ResponseDecodingError(
                "Unable to decode sync response.", status_code=status, body=text
            )
        return data
