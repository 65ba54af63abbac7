"""Async task resolution: poll a status resource until the task reaches a terminal state.

A call is treated as asynchronous when the server answers ``202 Accepted`` or
the payload points at a status resource (``status_url``, ``task_status_url``,
or a ``task_id`` from which ``tasks/<id>/status`` is synthesized).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from knowrithm.codec import decode_body, decode_error_body, enrich_error, error_code, error_message
from knowrithm.exceptions import (
    HttpStatusError,
    TaskFailedError,
    TaskTimeoutError,
    TimeoutError,
    TransportError,
)

if TYPE_CHECKING:
    from knowrithm.config import TaskConfig

logger = logging.getLogger(__name__)

HTTP_ACCEPTED = 202
MIN_POLLING_INTERVAL = 0.1  # seconds
TASK_METADATA_KEY = "_task"

_STATUS_FIELDS = ("status", "state", "task_status", "taskState")
_STATUS_URL_FIELDS = ("status_url", "task_status_url")
_TASK_ID_FIELDS = ("task_id", "taskId")


class TaskState(str, Enum):
    """Resolver states."""

    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def normalize_task_status(payload: Mapping[str, Any]) -> str | None:
    """Read the status token from the first populated candidate field, lower-cased."""
    for name in _STATUS_FIELDS:
        value = payload.get(name)
        if value is not None:
            return str(value).lower()
    return None


def extract_status_url(payload: Any) -> str | None:
    """Find the status resource for a task payload, if any."""
    if not isinstance(payload, Mapping):
        return None
    for name in _STATUS_URL_FIELDS:
        value = payload.get(name)
        if isinstance(value, str) and value:
            return value
    for name in _TASK_ID_FIELDS:
        task_id = payload.get(name)
        if isinstance(task_id, str) and task_id:
            return f"tasks/{task_id}/status"
    return None


def should_resolve(status_code: int, payload: Any, auto_resolve: bool = True) -> bool:
    """Decide whether a successful response is an asynchronous task to be polled."""
    if not auto_resolve or not isinstance(payload, Mapping) or not payload:
        return False
    if status_code == HTTP_ACCEPTED:
        return True
    return extract_status_url(payload) is not None


@dataclass(frozen=True)
class TaskStatusPayload:
    """A status payload normalized for the resolver. Created fresh for each poll."""

    status: str | None
    succeeded: bool
    failed: bool
    result: Any
    payload: dict[str, Any]

    @property
    def state(self) -> TaskState:
        if self.succeeded:
            return TaskState.SUCCEEDED
        if self.failed:
            return TaskState.FAILED
        return TaskState.POLLING

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        success_statuses: list[str] | tuple[str, ...],
        failure_statuses: list[str] | tuple[str, ...],
    ) -> TaskStatusPayload:
        payload = dict(payload)
        status = normalize_task_status(payload)
        if status is not None:
            succeeded = status in success_statuses
        else:
            succeeded = "result" in payload or payload.get("success") is True
        failed = (status is not None and status in failure_statuses) or bool(
            payload.get("error") or payload.get("errors")
        )
        if "result" in payload:
            result = payload["result"]
        elif "data" in payload:
            result = payload["data"]
        else:
            result = payload
        return cls(
            status=status,
            succeeded=succeeded,
            failed=failed and not succeeded,
            result=result,
            payload=payload,
        )

    def final_result(self) -> Any:
        """The extracted result with the full status payload attached as metadata."""
        if self.result is self.payload or self.result is None:
            return self.payload
        if isinstance(self.result, Mapping):
            result = dict(self.result)
            result[TASK_METADATA_KEY] = self.payload
            return result
        return {"result": self.result, TASK_METADATA_KEY: self.payload}

    def failure_message(self, operation: str) -> str:
        for key in ("error", "message", "detail"):
            value = self.payload.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
        errors = self.payload.get("errors")
        if errors:
            return str(errors)
        return f"Asynchronous task {self.status or 'failed'} ({operation})"


class TaskResolver:
    """Polls task status resources to completion.

    Polling does not retry: any HTTP or transport failure of a poll ends the
    resolution attempt immediately.
    """

    def __init__(
        self,
        config: TaskConfig,
        http_client: httpx.AsyncClient,
        *,
        url_builder: Callable[[str], str] = lambda path: path,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.http_client = http_client
        self._url_builder = url_builder
        self._sleep = sleep
        self._clock = clock

    @property
    def polling_interval(self) -> float:
        return max(MIN_POLLING_INTERVAL, self.config.polling_interval)

    def classify(self, payload: Mapping[str, Any]) -> TaskStatusPayload:
        return TaskStatusPayload.from_payload(
            payload,
            self.config.success_statuses,
            self.config.failure_statuses,
        )

    async def resolve(
        self,
        initial_payload: Any,
        headers: Mapping[str, str],
        timeout: float,
        operation: str,
    ) -> Any:
        """Resolve the response of a call that started an asynchronous task.

        Without an extractable status URL the initial payload is the final result.
        """
        payload = dict(initial_payload) if isinstance(initial_payload, Mapping) else {}
        status_url = extract_status_url(payload)
        if not status_url:
            return payload
        return await self.wait_for(
            self._url_builder(status_url),
            headers,
            timeout,
            operation,
            initial_payload=payload,
        )

    async def wait_for(
        self,
        status_url: str,
        headers: Mapping[str, str],
        timeout: float,
        operation: str,
        initial_payload: Mapping[str, Any] | None = None,
    ) -> Any:
        """Poll ``status_url`` until success, failure or the polling deadline."""
        deadline = self._clock() + self.config.polling_timeout
        payload: dict[str, Any] | None = dict(initial_payload) if initial_payload is not None else None
        polls = 0

        while True:
            if payload is not None:
                task = self.classify(payload)
                if task.state is TaskState.SUCCEEDED:
                    logger.debug("Task for %s succeeded after %d polls", operation, polls)
                    return task.final_result()
                if task.state is TaskState.FAILED:
                    raise TaskFailedError(
                        task.failure_message(operation),
                        task_status=task.status,
                        task=task.payload,
                        details={"operation": operation},
                    )

            if self._clock() > deadline:
                logger.warning("Task polling for %s timed out (%s)", operation, status_url)
                raise TaskTimeoutError(
                    "Task polling timed out",
                    status_url=status_url,
                    last_payload=payload,
                    details={"operation": operation},
                )

            if polls > 0 or payload is None:
                await self._sleep(self.polling_interval)

            payload = await self._poll(status_url, headers, timeout, operation, polls + 1)
            polls += 1

    async def _poll(
        self,
        status_url: str,
        headers: Mapping[str, str],
        timeout: float,
        operation: str,
        poll_number: int,
    ) -> dict[str, Any]:
        logger.debug("Polling task status %s (poll %d)", status_url, poll_number)
        try:
            response = await self.http_client.request(
                "GET",
                status_url,
                headers=dict(headers),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise TimeoutError(
                f"Task status request timed out after {timeout} seconds",
                timeout_seconds=timeout,
                details={"operation": operation, "attempt_number": poll_number, "task_status_url": status_url},
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"Task status request failed: {e}",
                None,
                {"operation": operation, "attempt_number": poll_number, "task_status_url": status_url},
                type(e).__name__,
            ) from e

        if response.status_code >= 400:
            error_data = enrich_error(decode_error_body(response), operation, poll_number)
            raise HttpStatusError(
                error_message(error_data, response.status_code),
                response.status_code,
                error_data,
                error_code(error_data),
            )

        payload = decode_body(response.content)
        return dict(payload) if isinstance(payload, Mapping) else {}
