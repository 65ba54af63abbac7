"""Request execution engine: one logical API call with timeout, body negotiation and retry."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from knowrithm.backoff import ErrorCategory, RetryPolicy, RetryState, categorize_error
from knowrithm.codec import (
    Body,
    FileDescriptor,
    JsonBody,
    MultipartBody,
    NoBody,
    decode_body,
    decode_error_body,
    decode_success,
    encode_request,
    enrich_error,
    error_code,
    error_message,
)
from knowrithm.config import KnowrithmConfig
from knowrithm.exceptions import APIError, HttpStatusError, RetryError, TimeoutError, TransportError
from knowrithm.tasks import TaskResolver, should_resolve

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]
HeaderProvider = Callable[[], Mapping[str, str]]


@dataclass(frozen=True)
class RequestDescriptor:
    """Everything needed to execute one logical call. Built fresh per call."""

    method: str
    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Body = field(default_factory=NoBody)
    timeout: float | None = None
    retry: RetryPolicy | None = None
    operation: str | None = None

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        *,
        data: Any = None,
        files: Sequence[FileDescriptor] | None = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
        operation: str | None = None,
    ) -> RequestDescriptor:
        """Pick the body variant: multipart when files are present, JSON when data is."""
        body: Body
        if files:
            body = MultipartBody(fields=dict(data or {}), files=tuple(files))
        elif data is not None:
            body = JsonBody(data)
        else:
            body = NoBody()
        return cls(
            method=method.upper(),
            path=path,
            params=dict(params or {}),
            headers=dict(headers or {}),
            body=body,
            timeout=timeout,
            retry=retry,
            operation=operation,
        )

    @property
    def label(self) -> str:
        """Operation label used in diagnostics."""
        return self.operation or f"{self.method.upper()} {self.path}"


class RequestEngine:
    """Executes RequestDescriptors against the API.

    Usage:
        engine = RequestEngine(config, httpx.AsyncClient(), auth_headers=lambda: {...})
        payload = await engine.execute(RequestDescriptor.build("GET", "/agent"))
    """

    def __init__(
        self,
        config: KnowrithmConfig,
        http_client: httpx.AsyncClient,
        *,
        auth_headers: HeaderProvider | None = None,
        resolver: TaskResolver | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.http_client = http_client
        self._auth_headers = auth_headers or dict
        self._sleep = sleep
        self.policy = RetryPolicy.from_config(config.retry)
        self.resolver = resolver or TaskResolver(
            config.tasks,
            http_client,
            url_builder=self.resolve_url,
            sleep=sleep,
            clock=clock,
        )

    def build_url(self, path: str) -> str:
        """Resolve a path against ``<base_url>/<api_version>``; absolute URLs pass through."""
        if path.startswith(("http://", "https://")):
            return path
        base = self.config.api_base_url
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{base}{path}"

    def resolve_url(self, path_or_url: str) -> str:
        """Resolve a server-provided reference (e.g. a task status URL) against the API base."""
        return str(httpx.URL(f"{self.config.api_base_url}/").join(path_or_url))

    def _merge_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        merged = dict(self._auth_headers())
        merged.update(headers)
        return merged

    async def _backoff(self, policy: RetryPolicy, state: RetryState, attempt: int, reason: str, label: str) -> None:
        delay_ms = policy.compute_delay(attempt)
        state.record_retry(reason, delay_ms)
        logger.info(
            "Retry %d/%d for %s: %s, waiting %dms",
            attempt + 1,
            policy.max_attempts - 1,
            label,
            reason,
            delay_ms,
        )
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    async def execute(self, descriptor: RequestDescriptor) -> Any:
        """Execute one logical call.

        Returns:
            The decoded payload: JSON value, raw text, ``{"success": True}`` for
            empty bodies, or the resolved result of an asynchronous task.

        Raises:
            HttpStatusError: non-retryable or budget-exhausted error status
            TimeoutError: the transport call timed out on the last attempt
            TransportError: connection-level failure on the last attempt
            TaskFailedError / TaskTimeoutError: async task resolution failed
        """
        method = descriptor.method.upper()
        label = descriptor.label
        url = self.build_url(descriptor.path)
        headers = self._merge_headers(descriptor.headers)
        encoded = encode_request(method, descriptor.body, headers, descriptor.params)
        timeout = descriptor.timeout if descriptor.timeout is not None else self.config.timeout
        policy = descriptor.retry or self.policy
        state = RetryState()

        for attempt in range(policy.max_attempts):
            state.attempt = attempt + 1
            logger.debug("%s %s (attempt %d/%d)", method, url, attempt + 1, policy.max_attempts)
            try:
                response = await self.http_client.request(
                    method,
                    url,
                    timeout=timeout,
                    follow_redirects=False,
                    **encoded.request_kwargs(),
                )
            except httpx.HTTPError as e:
                category = categorize_error(e)
                status = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
                if policy.should_retry_error(e, attempt, status):
                    await self._backoff(policy, state, attempt, f"{category.value} error ({e})", label)
                    continue
                raise self._classify_transport_error(e, category, status, timeout, label, attempt + 1) from e

            if response.status_code >= 400:
                error_data = enrich_error(decode_error_body(response), label, attempt + 1)
                if policy.should_retry_status(response.status_code, attempt):
                    await self._backoff(policy, state, attempt, f"HTTP {response.status_code}", label)
                    continue
                raise HttpStatusError(
                    error_message(error_data, response.status_code),
                    response.status_code,
                    error_data,
                    error_code(error_data),
                )

            payload = decode_body(response.content)
            if should_resolve(response.status_code, payload, self.config.tasks.auto_resolve):
                logger.debug("%s returned an asynchronous task; resolving", label)
                return await self.resolver.resolve(payload, headers, timeout, label)

            return decode_success(response)

        # Only reachable with a policy that asks to retry its final attempt.
        raise RetryError("Max retries exceeded", details={"operation": label, "attempts": state.attempt})

    @staticmethod
    def _classify_transport_error(
        error: httpx.HTTPError,
        category: ErrorCategory,
        status: int | None,
        timeout: float,
        label: str,
        attempt_number: int,
    ) -> APIError:
        details: dict[str, Any] = {"operation": label, "attempt_number": attempt_number}
        if category is ErrorCategory.TIMEOUT:
            details["suggestion"] = "Consider increasing timeout or retries for long-running operations."
            return TimeoutError(
                f"Request timed out after {timeout} seconds",
                timeout_seconds=timeout,
                status_code=status,
                details=details,
            )
        if isinstance(error, httpx.HTTPStatusError):
            details.update(decode_error_body(error.response))
            return HttpStatusError(str(error), status, details, error_code(details))
        return TransportError(
            f"Request failed: {error}",
            status,
            details,
            type(error).__name__,
        )
