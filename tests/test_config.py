from __future__ import annotations

import json
import logging

import pytest
import tomli_w
from pydantic import ValidationError

from knowrithm.config import (
    DEFAULT_RETRYABLE_STATUS_CODES,
    KnowrithmConfig,
    RetryConfig,
    TaskConfig,
    configure_logging,
)


class TestDefaults:
    def test_client_defaults(self):
        config = KnowrithmConfig()
        assert config.api_base_url == "https://app.knowrithm.org/api/v1"
        assert config.timeout == 30.0
        assert config.retry.max_retries == 3
        assert config.retry.retry_delay_ms == 1000
        assert config.retry.backoff_multiplier == 1.5
        assert config.retry.retryable_status_codes == [408, 429, 500, 502, 503, 504]
        assert config.tasks.polling_interval == 1.0
        assert config.tasks.polling_timeout == 120.0
        assert config.tasks.auto_resolve is True
        assert config.stream_path_template == "/conversation/{conversation_id}/messages/stream"

    def test_url_normalization(self):
        config = KnowrithmConfig(base_url="https://api.test/", api_version="/v2/")
        assert config.api_base_url == "https://api.test/v2"

    def test_empty_version(self):
        assert KnowrithmConfig(base_url="https://api.test", api_version="").api_base_url == "https://api.test"


class TestValidation:
    def test_max_retries_bounds(self):
        with pytest.raises(ValidationError):
            RetryConfig(max_retries=0)
        with pytest.raises(ValidationError):
            RetryConfig(max_retries=21)

    def test_multiplier_bounds(self):
        with pytest.raises(ValidationError):
            RetryConfig(backoff_multiplier=0.9)

    def test_invalid_status_code(self):
        with pytest.raises(ValidationError, match="Invalid HTTP status code"):
            RetryConfig(retryable_status_codes=[503, 999])

    def test_empty_status_codes_restore_defaults(self):
        assert RetryConfig(retryable_status_codes=[]).retryable_status_codes == DEFAULT_RETRYABLE_STATUS_CODES

    def test_status_tokens_lower_cased(self):
        config = TaskConfig(success_statuses=["OK ", "Done"], failure_statuses=["BROKEN"])
        assert config.success_statuses == ["ok", "done"]
        assert config.failure_statuses == ["broken"]

    def test_log_level(self):
        assert KnowrithmConfig(log_level="DEBUG").log_level == "debug"
        with pytest.raises(ValidationError, match="Invalid log level"):
            KnowrithmConfig(log_level="loud")
        with pytest.raises(ValidationError):
            KnowrithmConfig(log_levels={"knowrithm.engine": "chatty"})


class TestFiles:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert KnowrithmConfig.from_file(tmp_path / "nope.toml") == KnowrithmConfig()

    def test_round_trip_through_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        config = KnowrithmConfig(
            base_url="https://api.test",
            retry=RetryConfig(max_retries=7),
            tasks=TaskConfig(polling_interval=0.5),
        )
        with open(path, "wb") as f:
            tomli_w.dump(config.to_toml_dict(), f)

        assert KnowrithmConfig.from_file(path) == config

    def test_toml_dict_has_no_none(self):
        data = KnowrithmConfig().to_toml_dict()
        assert "stream_base_url" not in data
        assert "log_file" not in data
        assert data["retry"]["max_retries"] == 3

    def test_default_path(self):
        assert KnowrithmConfig.default_path().parts[-3:] == (".config", "knowrithm", "config.toml")


class TestConfigureLogging:
    def test_structured_file_output(self, tmp_path):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        log_file = tmp_path / "knowrithm.log"
        try:
            configure_logging(
                KnowrithmConfig(
                    log_level="info",
                    log_levels={"knowrithm.tasks": "warning"},
                    log_file=str(log_file),
                )
            )
            assert root.level == logging.INFO

            logging.getLogger("knowrithm.engine").info("Retry %d/%d", 1, 2, extra={"operation": "GET /x"})
            logging.getLogger("knowrithm.tasks").info("hidden")
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in handlers:
                root.addHandler(handler)
            root.setLevel(level)
            logging.getLogger("knowrithm.tasks").setLevel(logging.NOTSET)

        lines = log_file.read_text().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["level"] == "info"
        assert record["logger"] == "knowrithm.engine"
        assert record["message"] == "Retry 1/2"
        assert record["operation"] == "GET /x"
