"""Tests for the KnowrithmClient facade."""

from __future__ import annotations

import httpx
import pytest

from conftest import sse_response
from knowrithm.client import KnowrithmClient
from knowrithm.config import KnowrithmConfig
from knowrithm.exceptions import ConfigError, StreamError


class TestCredentials:
    """Tests for credential validation and auth headers."""

    def test_requires_credentials(self):
        with pytest.raises(ConfigError, match="requires either"):
            KnowrithmClient()

    def test_requires_key_and_secret_together(self):
        with pytest.raises(ConfigError, match="requires either"):
            KnowrithmClient(api_key="key")
        with pytest.raises(ConfigError, match="both api_key and api_secret"):
            KnowrithmClient(api_secret="secret", bearer_token="token")

    def test_api_key_headers(self):
        client = KnowrithmClient(api_key="key", api_secret="secret")
        assert client.auth_headers() == {"X-API-Key": "key", "X-API-Secret": "secret"}

    def test_bearer_headers(self):
        client = KnowrithmClient(bearer_token="token")
        assert client.auth_headers() == {"Authorization": "Bearer token"}

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("KNOWRITHM_API_KEY", "env-key")
        monkeypatch.setenv("KNOWRITHM_API_SECRET", "env-secret")
        monkeypatch.setenv("KNOWRITHM_BASE_URL", "https://staging.test/api/")
        monkeypatch.delenv("KNOWRITHM_BEARER_TOKEN", raising=False)

        client = KnowrithmClient.from_env()

        assert client.auth_headers()["X-API-Key"] == "env-key"
        assert client.base_url == "https://staging.test/api/v1"

    def test_from_env_without_credentials(self, monkeypatch):
        for name in ("KNOWRITHM_API_KEY", "KNOWRITHM_API_SECRET", "KNOWRITHM_BEARER_TOKEN"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ConfigError):
            KnowrithmClient.from_env()


class TestOverrides:
    """Tests for flat keyword overrides."""

    def test_overrides_update_config(self):
        client = KnowrithmClient(
            bearer_token="t",
            base_url="https://api.test",
            api_version="v2",
            timeout=5,
            max_retries=6,
            retry_delay_ms=10,
            backoff_multiplier=2,
            retryable_status_codes=[503],
            auto_resolve_tasks=False,
        )

        assert client.base_url == "https://api.test/v2"
        assert client.config.timeout == 5
        assert client.config.retry.max_retries == 6
        assert client.engine.policy.base_delay_ms == 10
        assert client.engine.policy.retryable_statuses == frozenset({503})
        assert client.config.tasks.auto_resolve is False

    def test_config_object_is_not_mutated(self):
        config = KnowrithmConfig()
        KnowrithmClient(config, bearer_token="t", max_retries=9)
        assert config.retry.max_retries == 3

    def test_unknown_override(self):
        with pytest.raises(ConfigError, match="Unknown client options: colour"):
            KnowrithmClient(bearer_token="t", colour="blue")

    def test_invalid_override(self):
        with pytest.raises(ConfigError, match="Invalid client options"):
            KnowrithmClient(bearer_token="t", max_retries=0)


class TestRequest:
    """Tests for request execution through the client."""

    @pytest.mark.asyncio
    async def test_per_call_retry_override(self, make_client, clock):
        client, transport = make_client(
            [httpx.Response(500), httpx.Response(500), httpx.Response(200, json={"ok": True})],
        )

        result = await client.request(
            "GET",
            "/agent",
            max_retries=5,
            retry_delay_ms=100,
            backoff_multiplier=2.0,
        )

        assert result == {"ok": True}
        assert transport.calls == 3
        assert clock.sleeps == [0.1, 0.2]
        assert transport.requests[0].headers["X-API-Key"] == "key"

    @pytest.mark.asyncio
    async def test_wait_for_task(self, make_client, clock):
        client, transport = make_client([httpx.Response(200, json={"status": "succeeded", "data": {"n": 3}})])

        result = await client.wait_for_task("tasks/t1/status", headers={"X-Trace": "1"})

        assert result == {"n": 3, "_task": {"status": "succeeded", "data": {"n": 3}}}
        request = transport.requests[0]
        assert str(request.url) == "https://api.test/v1/tasks/t1/status"
        assert request.headers["X-Trace"] == "1"
        assert request.headers["X-API-Secret"] == "secret"


class TestStreamUrls:
    """Tests for stream URL resolution."""

    def test_override_wins(self):
        client = KnowrithmClient(bearer_token="t", base_url="https://api.test")
        payload = {"stream_url": "/other"}
        assert client.resolve_stream_url("c1", payload, "https://s.test/live") == "https://s.test/live"

    def test_payload_url(self):
        client = KnowrithmClient(bearer_token="t", base_url="https://api.test")
        assert client.resolve_stream_url("c1", {"sse_url": "events/c1"}) == "https://api.test/v1/events/c1"

    def test_template_tokens(self):
        config = KnowrithmConfig(
            base_url="https://api.test",
            stream_path_template="/conversation/{conversation_id}/stream/{message_id}?task={task_id}",
            stream_base_url="https://stream.test/",
        )
        client = KnowrithmClient(config, bearer_token="t")

        url = client.resolve_stream_url("c1", {"message_id": "m1", "task_id": "t1"})

        assert url == "https://stream.test/conversation/c1/stream/m1?task=t1"

    def test_missing_tokens_become_empty(self):
        client = KnowrithmClient(bearer_token="t", base_url="https://api.test")
        assert client.resolve_stream_url("c1") == "https://api.test/v1/conversation/c1/messages/stream"

    def test_no_template(self):
        client = KnowrithmClient(bearer_token="t", stream_path_template="")
        assert client.resolve_stream_url("c1") is None

    def test_websocket_rejected(self):
        client = KnowrithmClient(bearer_token="t")
        with pytest.raises(StreamError, match="WebSocket"):
            client.resolve_stream_url("c1", {"socket_url": "wss://ws.test/c1"})


class TestOpenStream:
    """Tests for opening SSE endpoints."""

    @pytest.mark.asyncio
    async def test_opens_and_reads_events(self, make_client):
        client, transport = make_client(
            [sse_response([b"event: token\ndata: {\"content\": \"Hel", b"lo\"}\n\n", b"event: done\ndata: {}\n\n"])]
        )

        stream = await client.open_stream(
            "https://api.test/v1/conversation/c1/messages/stream",
            headers={"X-Trace": "1"},
            metadata={"conversation_id": "c1"},
        )
        events = [event async for event in stream]

        assert [(e.event, e.data) for e in events] == [("token", {"content": "Hello"}), ("done", {})]
        assert stream.metadata == {
            "conversation_id": "c1",
            "stream_url": "https://api.test/v1/conversation/c1/messages/stream",
        }
        request = transport.requests[0]
        assert request.method == "GET"
        assert request.headers["Accept"] == "text/event-stream"
        assert request.headers["X-API-Key"] == "key"
        assert request.headers["X-Trace"] == "1"

    @pytest.mark.asyncio
    async def test_event_type_filter(self, make_client):
        client, _ = make_client([sse_response([b"event: a\ndata: 1\n\nevent: b\ndata: 2\n\n"])])

        stream = await client.open_stream("https://s.test/x", event_types=["b"])

        assert [e.data async for e in stream] == [2]

    @pytest.mark.asyncio
    async def test_error_status(self, make_client):
        client, _ = make_client([httpx.Response(401, json={"detail": "Invalid API key"})])

        with pytest.raises(StreamError) as exc_info:
            await client.open_stream("https://s.test/x")

        error = exc_info.value
        assert error.status_code == 401
        assert error.message == "Failed to open chat stream: Invalid API key (GET https://s.test/x)"
        assert error.details["detail"] == "Invalid API key"

    @pytest.mark.asyncio
    async def test_connection_failure(self, make_client):
        client, _ = make_client([httpx.ConnectError("refused")])

        with pytest.raises(StreamError, match="Failed to open chat stream: refused"):
            await client.open_stream("https://s.test/x")
