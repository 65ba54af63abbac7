"""Configuration management for Knowrithm."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}
# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

DEFAULT_SUCCESS_STATUSES = ["success", "completed", "finished", "done", "succeeded"]
DEFAULT_FAILURE_STATUSES = ["failed", "failure", "error", "cancelled", "timeout", "revoked"]
DEFAULT_RETRYABLE_STATUS_CODES = [408, 429, 500, 502, 503, 504]


def level_number(name: str) -> int:
    """Map a level name (case-insensitive) to its ``logging`` constant."""
    key = name.strip().lower()
    try:
        return _LEVEL_NAMES[key]
    except KeyError:
        choices = ", ".join(n for n in _LEVEL_NAMES if n != "warn")
        raise ValueError(f"Invalid log level: {name}. Valid: {choices}") from None


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = record.stack_info
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(config: "KnowrithmConfig") -> None:
    """Route all logging to one JSON handler (stderr or ``config.log_file``).

    The root logger gets the most verbose configured level so per-logger
    overrides in ``log_levels`` can lower or raise individual components.
    """
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler: logging.Handler = (
        logging.FileHandler(config.log_file) if config.log_file else logging.StreamHandler()
    )
    handler.setFormatter(JsonLogFormatter())
    root.addHandler(handler)

    overrides = {name: level_number(level) for name, level in config.log_levels.items()}
    root.setLevel(min([level_number(config.log_level), *overrides.values()]))
    for name, level in overrides.items():
        logging.getLogger(name).setLevel(level)


class RetryConfig(BaseModel):
    """Retry configuration.

    Delays are in milliseconds; attempt ``k`` (0-based) waits
    ``round(retry_delay_ms * backoff_multiplier ** k)``.
    """

    max_retries: int = Field(default=3, ge=1, le=20, description="Total attempts per call")
    retry_delay_ms: int = Field(default=1000, ge=0, description="Base delay between attempts (ms)")
    backoff_multiplier: float = Field(default=1.5, ge=1.0, description="Exponential backoff multiplier")
    retryable_status_codes: list[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_STATUS_CODES),
        description="HTTP statuses that trigger a retry",
    )

    @field_validator("retryable_status_codes")
    @classmethod
    def _validate_status_codes(cls, value: list[int]) -> list[int]:
        if not value:
            return list(DEFAULT_RETRYABLE_STATUS_CODES)
        for code in value:
            if not 100 <= code <= 599:
                raise ValueError(f"Invalid HTTP status code: {code}")
        return value


class TaskConfig(BaseModel):
    """Asynchronous task polling configuration."""

    polling_interval: float = Field(default=1.0, ge=0.0, description="Seconds between status polls")
    polling_timeout: float = Field(default=120.0, gt=0.0, description="Wall-clock polling deadline (seconds)")
    success_statuses: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SUCCESS_STATUSES),
        description="Status tokens that mean the task succeeded",
    )
    failure_statuses: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FAILURE_STATUSES),
        description="Status tokens that mean the task failed",
    )
    auto_resolve: bool = Field(default=True, description="Poll async tasks transparently")

    @field_validator("success_statuses", "failure_statuses")
    @classmethod
    def _lower_statuses(cls, value: list[str]) -> list[str]:
        return [status.strip().lower() for status in value]


class KnowrithmConfig(BaseModel):
    """Main configuration for the Knowrithm client."""

    base_url: str = Field(default="https://app.knowrithm.org/api", description="API base URL")
    api_version: str = Field(default="v1", description="API version path segment")
    timeout: float = Field(default=30.0, gt=0.0, description="Per-request timeout (seconds)")
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates")
    retry: RetryConfig = Field(default_factory=RetryConfig, description="Retry configuration")
    tasks: TaskConfig = Field(default_factory=TaskConfig, description="Async task polling")

    # Streaming
    stream_path_template: str | None = Field(
        default="/conversation/{conversation_id}/messages/stream",
        description="Path template for chat event streams",
    )
    stream_base_url: str | None = Field(
        default=None,
        description="Base URL for streams (defaults to the API base)",
    )
    stream_timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Timeout for opening a stream (defaults to timeout)",
    )

    log_level: str = Field(default="warning", description="Log level")
    log_levels: dict[str, str] = Field(
        default_factory=dict,
        description="Per-component log levels (e.g., {'knowrithm.engine': 'debug'})",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path (structured JSON)",
    )

    @field_validator("base_url", "stream_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.rstrip("/")

    @field_validator("api_version")
    @classmethod
    def _strip_version_slashes(cls, value: str) -> str:
        return value.strip("/")

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level_number(value)
        return value.strip().lower()

    @field_validator("log_levels")
    @classmethod
    def _validate_log_levels(cls, value: dict[str, str]) -> dict[str, str]:
        for level in value.values():
            level_number(level)
        return {name: level.strip().lower() for name, level in value.items()}

    @property
    def api_base_url(self) -> str:
        """Base URL including the version segment."""
        if not self.api_version:
            return self.base_url
        return f"{self.base_url}/{self.api_version}"

    @classmethod
    def from_file(cls, path: str | Path) -> "KnowrithmConfig":
        """Load configuration from TOML file."""
        import tomllib

        path = Path(path)
        if not path.exists():
            return cls()

        with open(path, "rb") as f:
            data = tomllib.load(f)

        return cls(**data)

    @classmethod
    def default_path(cls) -> Path:
        """Get default config file path."""
        return Path.home() / ".config" / "knowrithm" / "config.toml"

    def to_toml_dict(self) -> dict[str, Any]:
        """Dump the configuration in a TOML-serializable shape (no None values)."""
        return self.model_dump(mode="json", exclude_none=True)
