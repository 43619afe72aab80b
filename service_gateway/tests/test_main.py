"""
Unit tests for Gateway main service routes.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from service_gateway.app.adapters import ModelCatalog
from service_gateway.app.auth import CredentialState, InMemoryCredentialStore
from service_gateway.app.main import GatewayService
from service_gateway.app.ratelimit import AdmissionController, AdmissionPolicy
from shared.config import get_config
from shared.errors import AuthenticationError, UpstreamError
from shared.metrics import MetricsCollector

COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "model": "gpt-4o",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "hello"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5},
}

MODELS_PAYLOAD = {
    "object": "list",
    "data": [{"id": "gpt-4o", "object": "model", "capabilities": {"limits": {"max_output_tokens": 16384}}}],
}


class FakeUpstreamStream:
    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        self.closed = True


STREAM_CHUNKS = [
    {"id": "c1", "model": "gpt-4o", "choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hi"}}]},
    {"id": "c1", "model": "gpt-4o", "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
]


class TestGatewayService:
    """Route-level behaviour with injected collaborators."""

    @pytest.fixture
    def config(self):
        return get_config("gateway", 4141, env="test")

    @pytest.fixture
    def credentials(self):
        credentials = MagicMock()
        credentials.state = CredentialState.AUTHENTICATED
        credentials.get_valid = AsyncMock(return_value="bearer-1")
        credentials.refresh = AsyncMock(return_value="bearer-2")
        credentials.load = AsyncMock(return_value=True)
        credentials.stop = AsyncMock()
        return credentials

    @pytest.fixture
    def upstream(self):
        upstream = MagicMock()
        upstream.create_chat_completion = AsyncMock(return_value=COMPLETION)
        upstream.list_models = AsyncMock(return_value=MODELS_PAYLOAD)
        upstream.close = AsyncMock()
        return upstream

    @pytest.fixture
    def exchange_client(self):
        exchange_client = MagicMock()
        exchange_client.close = AsyncMock()
        return exchange_client

    @pytest.fixture
    def admission(self):
        return AdmissionController(0)

    @pytest.fixture
    def gateway_service(self, config, credentials, upstream, exchange_client, admission):
        return GatewayService(
            config,
            MetricsCollector("gateway"),
            admission=admission,
            credentials=credentials,
            upstream=upstream,
            catalog=ModelCatalog(upstream),
            exchange_client=exchange_client,
            store=InMemoryCredentialStore(),
        )

    @pytest.fixture
    def client(self, gateway_service):
        return TestClient(gateway_service.app)

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json() == {"service": "gateway", "status": "running", "credential": "authenticated"}

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"credential": "authenticated", "model_catalog": "empty"}

    def test_metrics_endpoint(self, client):
        client.get("/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_openai_chat_completion(self, client, upstream):
        response = client.post(
            "/v1/chat/completions",
            json={"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]},
            headers={"X-Request-ID": "req-42"},
        )

        assert response.status_code == 200
        assert response.json() == COMPLETION
        assert response.headers["X-Request-ID"] == "req-42"
        upstream.create_chat_completion.assert_awaited_once()

    def test_unprefixed_chat_completion_route(self, client):
        response = client.post("/chat/completions", json={"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 200

    def test_anthropic_message(self, client):
        response = client.post(
            "/v1/messages",
            json={"model": "gpt-4o", "max_tokens": 32, "messages": [{"role": "user", "content": "hi"}]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["type"] == "message"
        assert data["content"] == [{"type": "text", "text": "hello"}]
        assert data["usage"] == {"input_tokens": 4, "output_tokens": 1}

    def test_invalid_json_uses_dialect_envelope(self, client):
        response = client.post("/v1/messages", content=b"{not json", headers={"content-type": "application/json"})

        assert response.status_code == 400
        assert response.json()["type"] == "error"
        assert response.json()["error"]["type"] == "invalid_request_error"

    def test_validation_error_openai_envelope(self, client, upstream):
        response = client.post("/v1/chat/completions", json={"model": "gpt-4o", "messages": []})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["type"] == "invalid_request_error"
        assert error["param"] is None
        upstream.create_chat_completion.assert_not_awaited()

    def test_authentication_error(self, client, credentials):
        credentials.get_valid = AsyncMock(side_effect=AuthenticationError("No upstream credential"))

        response = client.post("/v1/messages", json={"model": "gpt-4o", "max_tokens": 8, "messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 401
        assert response.json() == {
            "type": "error",
            "error": {"type": "authentication_error", "message": "No upstream credential"},
        }

    def test_upstream_error_status_is_forwarded(self, client, upstream):
        upstream.create_chat_completion = AsyncMock(
            side_effect=UpstreamError(503, body={"error": {"message": "try later"}})
        )

        response = client.post("/v1/chat/completions", json={"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 503
        assert response.json()["error"]["message"] == "try later"

    def test_unexpected_error_renders_api_error(self, client, upstream):
        upstream.create_chat_completion = AsyncMock(side_effect=RuntimeError("kaboom"))

        response = client.post("/v1/messages", json={"model": "gpt-4o", "max_tokens": 8, "messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 500
        assert response.json()["error"] == {"type": "api_error", "message": "Internal server error"}

    def test_rate_limited_request_gets_retry_after(self, client, gateway_service):
        gateway_service.dispatcher.admission = AdmissionController(60, AdmissionPolicy.REJECT)
        body = {"model": "gpt-4o", "max_tokens": 8, "messages": [{"role": "user", "content": "hi"}]}

        assert client.post("/v1/messages", json=body).status_code == 200
        response = client.post("/v1/messages", json=body)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 59
        assert response.json()["error"]["type"] == "rate_limit_error"

    def test_anthropic_stream(self, client, upstream):
        stream = FakeUpstreamStream(STREAM_CHUNKS)
        upstream.open_stream = AsyncMock(return_value=stream)

        response = client.post(
            "/v1/messages",
            json={"model": "gpt-4o", "max_tokens": 8, "stream": True, "messages": [{"role": "user", "content": "hi"}]},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith("event: message_start\n")
        assert "event: content_block_delta\n" in response.text
        assert response.text.endswith("event: message_stop\ndata: {\"type\": \"message_stop\"}\n\n")
        assert stream.closed is True

    def test_openai_stream_ends_with_done(self, client, upstream):
        upstream.open_stream = AsyncMock(return_value=FakeUpstreamStream(STREAM_CHUNKS))

        response = client.post(
            "/v1/chat/completions",
            json={"model": "gpt-4o", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
        )

        assert response.status_code == 200
        assert response.text.startswith("data: {")
        assert response.text.endswith("data: [DONE]\n\n")

    def test_models_route(self, client, upstream):
        response = client.get("/v1/models")

        assert response.status_code == 200
        assert [model["id"] for model in response.json()["data"]] == ["gpt-4o"]
        upstream.list_models.assert_awaited_once_with("bearer-1")
        assert client.get("/models").json()["data"][0]["id"] == "gpt-4o"

    def test_startup_and_shutdown_wire_collaborators(self, gateway_service, credentials, upstream, exchange_client):
        with TestClient(gateway_service.app) as client:
            assert client.get("/health").json()["dependencies"]["model_catalog"] == "ok"

        credentials.load.assert_awaited_once()
        credentials.start_background_refresh.assert_called_once()
        credentials.stop.assert_awaited_once()
        upstream.close.assert_awaited_once()
        exchange_client.close.assert_awaited_once()
