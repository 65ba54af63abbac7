"""Knowrithm - async Python client for the Knowrithm API."""

__version__ = "0.1.0"

# Re-export core components for convenience
from .backoff import ErrorCategory, RetryPolicy, RetryState, categorize_error
from .client import KnowrithmClient
from .codec import BinaryPart, FileDescriptor, JsonBody, MultipartBody, NoBody, normalize_binary
from .config import KnowrithmConfig, RetryConfig, TaskConfig, configure_logging
from .engine import RequestDescriptor, RequestEngine
from .exceptions import (
    APIError,
    ConfigError,
    HttpStatusError,
    KnowrithmError,
    RetryError,
    StreamError,
    TaskFailedError,
    TaskTimeoutError,
    TimeoutError,
    TransportError,
    ValidationError,
)
from .services import DocumentService, MessageService
from .streaming import MessageStream, SSEDecoder, StreamEvent, StreamingMetrics
from .tasks import TaskResolver, TaskState, TaskStatusPayload

__all__ = [
    # Core
    "KnowrithmClient",
    "KnowrithmConfig",
    "RetryConfig",
    "TaskConfig",
    "configure_logging",
    # Requests
    "RequestDescriptor",
    "RequestEngine",
    "RetryPolicy",
    "RetryState",
    "ErrorCategory",
    "categorize_error",
    # Bodies
    "NoBody",
    "JsonBody",
    "MultipartBody",
    "FileDescriptor",
    "BinaryPart",
    "normalize_binary",
    # Tasks
    "TaskResolver",
    "TaskState",
    "TaskStatusPayload",
    # Streaming
    "MessageStream",
    "SSEDecoder",
    "StreamEvent",
    "StreamingMetrics",
    # Services
    "MessageService",
    "DocumentService",
    # Exceptions
    "KnowrithmError",
    "ConfigError",
    "ValidationError",
    "APIError",
    "HttpStatusError",
    "TransportError",
    "TimeoutError",
    "RetryError",
    "TaskFailedError",
    "TaskTimeoutError",
    "StreamError",
]
