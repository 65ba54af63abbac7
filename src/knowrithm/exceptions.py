"""
Knowrithm Exception Hierarchy.

All custom exceptions inherit from KnowrithmError for unified error handling.
Everything raised by a network exchange is an APIError carrying the HTTP
status (when known), a machine error code (when known) and a diagnostic bag.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class KnowrithmError(Exception):
    """Base exception for Knowrithm errors.

    Attributes:
        message: Human-readable error description
        context: Additional context for debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self._log_error()

    def _log_error(self) -> None:
        """Log the error creation at debug level.

        Errors are logged at debug to avoid noise from expected/retried errors.
        Callers should log at appropriate level when handling the exception.
        """
        logger.debug(
            f"{self.__class__.__name__}: {self.message}",
            extra={"error_context": self.context},
        )

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{ctx}]"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON output."""
        result: dict[str, Any] = {"error": self.message}
        if self.context:
            result["details"] = self.context
        return result


class ConfigError(KnowrithmError):
    """Raised for configuration errors.

    Examples:
        - Missing credentials
        - Half of an API key pair
        - Malformed config file
    """


class ValidationError(KnowrithmError):
    """Raised for local input validation errors (never for API responses).

    Examples:
        - Unsupported file content type for a multipart upload
        - Unreadable document path
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        value: Any = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if field_name:
            ctx["field"] = field_name
        if value is not None:
            ctx["value"] = repr(value)
        super().__init__(message, ctx)
        self.field_name = field_name
        self.value = value


class APIError(KnowrithmError):
    """A classified failure of a logical API call.

    Attributes:
        status_code: HTTP status, when a response was received
        error_code: Machine-readable error code, when known
        details: Diagnostic bag (operation, attempt number, server error body)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def details(self) -> dict[str, Any]:
        return self.context

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(status={self.status_code}, code={self.error_code}): {self.message}"

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.status_code is not None:
            result["status"] = self.status_code
        if self.error_code:
            result["code"] = self.error_code
        return result


class HttpStatusError(APIError):
    """The server answered with a 4xx/5xx status."""


class TransportError(APIError):
    """The request never produced a response (connection refused, reset, ...)."""


class TimeoutError(TransportError):
    """The transport call exceeded its timeout.

    Attributes:
        timeout_seconds: The timeout value that was exceeded
    """

    CODE = "TIMEOUT"

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        ctx = details or {}
        if timeout_seconds is not None:
            ctx["timeout_seconds"] = timeout_seconds
        super().__init__(message, status_code, ctx, self.CODE)
        self.timeout_seconds = timeout_seconds


class RetryError(APIError):
    """Raised when the attempt loop ends without a result or a classified failure."""


class TaskFailedError(APIError):
    """An asynchronous task reached a terminal failure status.

    Attributes:
        task_status: Normalized status token, if the payload carried one
        task: The full task payload
    """

    def __init__(
        self,
        message: str,
        task_status: str | None = None,
        task: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        ctx = details or {}
        if task is not None:
            ctx["task"] = task
        if task_status:
            ctx["task_status"] = task_status
        super().__init__(message, None, ctx)
        self.task_status = task_status
        self.task = task or {}


class TaskTimeoutError(APIError):
    """Task polling exceeded its wall-clock deadline.

    Attributes:
        status_url: The status resource that was being polled
        last_payload: The last payload observed before the deadline
    """

    CODE = "TASK_TIMEOUT"

    def __init__(
        self,
        message: str,
        status_url: str | None = None,
        last_payload: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        ctx = details or {}
        if status_url:
            ctx["task_status_url"] = status_url
        ctx["last_payload"] = last_payload
        super().__init__(message, None, ctx, self.CODE)
        self.status_url = status_url
        self.last_payload = last_payload


class StreamError(APIError):
    """Raised when an event stream cannot be opened or fails while reading.

    Attributes:
        url: The stream URL, when one was resolved
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        ctx = details or {}
        if url:
            ctx["url"] = url
        super().__init__(message, status_code, ctx)
        self.url = url
