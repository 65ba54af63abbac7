"""Knowrithm API client: credentials, request execution and stream opening."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from knowrithm.codec import FileDescriptor, decode_error_body, error_message
from knowrithm.config import KnowrithmConfig
from knowrithm.engine import RequestDescriptor, RequestEngine
from knowrithm.exceptions import ConfigError, StreamError
from knowrithm.services import DocumentService, MessageService
from knowrithm.streaming import MessageStream

logger = logging.getLogger(__name__)

_RETRY_OVERRIDES = ("max_retries", "retry_delay_ms", "backoff_multiplier", "retryable_status_codes")
_STREAM_URL_KEYS = ("stream_url", "sse_url", "socket_url")


def _apply_overrides(config: KnowrithmConfig, overrides: dict[str, Any]) -> KnowrithmConfig:
    """Return ``config`` with flat keyword overrides applied."""
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if not overrides:
        return config

    data = config.model_dump()
    for key in _RETRY_OVERRIDES:
        if key in overrides:
            data["retry"][key] = overrides.pop(key)
    if "auto_resolve_tasks" in overrides:
        data["tasks"]["auto_resolve"] = overrides.pop("auto_resolve_tasks")

    unknown = sorted(set(overrides) - set(KnowrithmConfig.model_fields))
    if unknown:
        raise ConfigError(f"Unknown client options: {', '.join(unknown)}")
    data.update(overrides)

    try:
        return KnowrithmConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid client options: {e}") from e


class KnowrithmClient:
    """Async client for the Knowrithm API.

    Authenticates with an API key and secret, or with a bearer token.

    Usage:
        async with KnowrithmClient(api_key="...", api_secret="...") as client:
            agents = await client.request("GET", "/agent")
    """

    def __init__(
        self,
        config: KnowrithmConfig | None = None,
        *,
        api_key: str | None = None,
        api_secret: str | None = None,
        bearer_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        **overrides: Any,
    ) -> None:
        if (not api_key or not api_secret) and not bearer_token:
            raise ConfigError("KnowrithmClient requires either api_key/api_secret or bearer_token credentials")
        if bool(api_key) != bool(api_secret):
            raise ConfigError("KnowrithmClient requires both api_key and api_secret for API key authentication")

        self._api_key = api_key
        self._api_secret = api_secret
        self._bearer_token = bearer_token
        self.config = _apply_overrides(config or KnowrithmConfig(), overrides)
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(verify=self.config.verify_ssl)
        self.engine = RequestEngine(
            self.config,
            self.http_client,
            auth_headers=self.auth_headers,
            sleep=sleep,
            clock=clock,
        )

        self.messages = MessageService(self)
        self.documents = DocumentService(self)

    @classmethod
    def from_env(cls, config: KnowrithmConfig | None = None, **kwargs: Any) -> KnowrithmClient:
        """Build a client from ``KNOWRITHM_*`` environment variables."""
        base_url = os.environ.get("KNOWRITHM_BASE_URL")
        if base_url and "base_url" not in kwargs:
            kwargs["base_url"] = base_url
        return cls(
            config,
            api_key=os.environ.get("KNOWRITHM_API_KEY"),
            api_secret=os.environ.get("KNOWRITHM_API_SECRET"),
            bearer_token=os.environ.get("KNOWRITHM_BEARER_TOKEN"),
            **kwargs,
        )

    @property
    def base_url(self) -> str:
        return self.config.api_base_url

    def auth_headers(self) -> dict[str, str]:
        """Headers that authenticate a request."""
        if self._api_key and self._api_secret:
            return {"X-API-Key": self._api_key, "X-API-Secret": self._api_secret}
        if self._bearer_token:
            return {"Authorization": f"Bearer {self._bearer_token}"}
        return {}

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> KnowrithmClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        data: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        files: Sequence[FileDescriptor] | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
        backoff_multiplier: float | None = None,
        retryable_status_codes: Iterable[int] | None = None,
        operation: str | None = None,
    ) -> Any:
        """Execute one logical API call; retry and task polling happen inside."""
        retry = None
        if any(
            value is not None
            for value in (max_retries, retry_delay_ms, backoff_multiplier, retryable_status_codes)
        ):
            retry = self.engine.policy.with_overrides(
                max_attempts=max_retries,
                base_delay_ms=retry_delay_ms,
                multiplier=backoff_multiplier,
                retryable_statuses=retryable_status_codes,
            )
        descriptor = RequestDescriptor.build(
            method,
            path,
            data=data,
            files=files,
            params=params,
            headers=headers,
            timeout=timeout,
            retry=retry,
            operation=operation,
        )
        return await self.engine.execute(descriptor)

    async def wait_for_task(
        self,
        status_url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        operation: str | None = None,
    ) -> Any:
        """Poll a task status resource until it succeeds, fails or times out."""
        request_headers = self.auth_headers()
        request_headers.update(headers or {})
        return await self.engine.resolver.wait_for(
            self.engine.resolve_url(status_url),
            request_headers,
            timeout if timeout is not None else self.config.timeout,
            operation or f"GET {status_url}",
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def normalize_stream_url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        if path_or_url.startswith(("ws://", "wss://")):
            raise StreamError(
                "WebSocket URLs are not supported; provide an SSE http(s) endpoint",
                url=path_or_url,
            )
        base = (self.config.stream_base_url or self.base_url).rstrip("/")
        if path_or_url.startswith("/"):
            return f"{base}{path_or_url}"
        return f"{base}/{path_or_url}"

    def resolve_stream_url(
        self,
        conversation_id: str,
        payload: Mapping[str, Any] | None = None,
        override: str | None = None,
    ) -> str | None:
        """Pick the stream endpoint for a conversation.

        Order: explicit override, a URL advertised in the payload, then the
        configured path template. Returns None when none is available.
        """
        if override:
            return self.normalize_stream_url(override)

        payload = payload or {}
        for key in _STREAM_URL_KEYS:
            candidate = payload.get(key)
            if candidate:
                return self.normalize_stream_url(str(candidate))

        template = self.config.stream_path_template
        if not template:
            return None
        tokens = {
            "conversation_id": conversation_id,
            "message_id": payload.get("message_id") or "",
            "task_id": payload.get("task_id") or "",
        }
        path = template
        for name, value in tokens.items():
            path = path.replace(f"{{{name}}}", str(value))
        return self.normalize_stream_url(path)

    async def open_stream(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        event_types: Iterable[str] | None = None,
        parse_json: bool = True,
        metadata: Mapping[str, Any] | None = None,
    ) -> MessageStream:
        """Open an SSE endpoint and return a started MessageStream.

        The timeout bounds establishing the stream, not reading from it.
        """
        request_headers = {"Accept": "text/event-stream"}
        request_headers.update(self.auth_headers())
        request_headers.update(headers or {})
        if timeout is None:
            timeout = self.config.stream_timeout if self.config.stream_timeout is not None else self.config.timeout

        request = self.http_client.build_request(
            "GET",
            url,
            headers=request_headers,
            timeout=httpx.Timeout(timeout, read=None),
        )
        logger.debug("Opening stream %s", url)
        try:
            async with asyncio.timeout(timeout):
                response = await self.http_client.send(request, stream=True)
        except TimeoutError as e:
            raise StreamError(
                f"Failed to open chat stream: timed out after {timeout} seconds",
                url=url,
            ) from e
        except httpx.HTTPError as e:
            raise StreamError(f"Failed to open chat stream: {e}", url=url) from e

        if response.status_code >= 400:
            try:
                await response.aread()
                error_data = decode_error_body(response)
            finally:
                await response.aclose()
            message = error_message(error_data, response.status_code)
            raise StreamError(
                f"Failed to open chat stream: {message} (GET {url})",
                url=url,
                status_code=response.status_code,
                details=error_data,
            )

        stream_metadata = dict(metadata or {})
        stream_metadata["stream_url"] = url
        stream = MessageStream(
            response.aiter_bytes(),
            url,
            response=response,
            accepted_events=event_types,
            parse_json=parse_json,
            metadata=stream_metadata,
        )
        stream.start()
        return stream
