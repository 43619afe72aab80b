"""
Upstream chat-completions client.
"""

import json
import uuid
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from shared.config import BaseConfig
from shared.errors import TranslationError, UpstreamError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception

from ..translation.models import CanonicalRequest

MODEL_LIST_RETRY = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class UpstreamStream:
    """Server-sent chunks of one upstream completion.

    Iterating yields each ``data:`` payload as a dict. Closing the stream
    closes the underlying HTTP response, which aborts the upstream fetch.
    """

    def __init__(self, response: httpx.Response):
        self.response = response
        self.logger = get_logger("gateway.upstream.stream")
        self.closed = False

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for line in self.response.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if not payload:
                    continue
                if payload == "[DONE]":
                    return
                try:
                    parsed = json.loads(payload)
                except ValueError as exc:
                    raise TranslationError(
                        "Upstream sent an unparseable stream chunk",
                        details={"chunk": payload[:200]},
                    ) from exc
                if isinstance(parsed, dict):
                    yield parsed
        except httpx.TransportError as exc:
            self.logger.warning("Upstream stream interrupted", url=str(self.response.request.url), error=str(exc))

    async def aclose(self) -> None:
        if not self.closed:
            self.closed = True
            await self.response.aclose()


class UpstreamClient:
    """Thin client for the upstream provider's canonical endpoints."""

    def __init__(self, config: BaseConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.base_url = config.resolved_upstream_base_url
        self.logger = get_logger("gateway.upstream")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.upstream_timeout_seconds, connect=10.0)
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def build_headers(self, bearer: str, *, vision: bool = False, agent: bool = False) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {bearer}",
            "content-type": "application/json",
            "copilot-integration-id": "vscode-chat",
            "editor-version": self.config.editor_version,
            "editor-plugin-version": f"copilot-chat/{self.config.copilot_chat_version}",
            "user-agent": f"GitHubCopilotChat/{self.config.copilot_chat_version}",
            "openai-intent": "conversation-panel",
            "x-github-api-version": self.config.github_api_version,
            "x-request-id": str(uuid.uuid4()),
            "x-vscode-user-agent-library-version": "electron-fetch",
            "X-Initiator": "agent" if agent else "user",
        }
        if vision:
            headers["copilot-vision-request"] = "true"
        return headers

    def _request_headers(self, bearer: str, request: CanonicalRequest) -> Dict[str, str]:
        return self.build_headers(bearer, vision=request.has_images, agent=request.is_agent_call)

    async def create_chat_completion(self, bearer: str, request: CanonicalRequest) -> Dict[str, Any]:
        """Send a non-streaming completion and return the decoded body."""
        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                json=request.to_payload(),
                headers=self._request_headers(bearer, request),
            )
        except httpx.TransportError as exc:
            self.logger.error("Upstream unreachable", error=str(exc))
            raise UpstreamError(502, "Upstream provider unreachable", details={"error": str(exc)}) from exc

        if response.status_code >= 400:
            self.logger.warning("Upstream returned error", status_code=response.status_code, model=request.model)
            raise UpstreamError(response.status_code, "Upstream request failed", body=_error_body(response))
        return response.json()

    async def open_stream(self, bearer: str, request: CanonicalRequest) -> UpstreamStream:
        """Start a streaming completion; the caller must ``aclose`` the result."""
        http_request = self._client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=request.to_payload(),
            headers=self._request_headers(bearer, request),
        )
        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.TransportError as exc:
            self.logger.error("Upstream unreachable", error=str(exc))
            raise UpstreamError(502, "Upstream provider unreachable", details={"error": str(exc)}) from exc

        if response.status_code >= 400:
            try:
                await response.aread()
                body = _error_body(response)
            finally:
                await response.aclose()
            self.logger.warning("Upstream returned error", status_code=response.status_code, model=request.model)
            raise UpstreamError(response.status_code, "Upstream request failed", body=body)
        return UpstreamStream(response)

    @retry_on_exception((httpx.TransportError, UpstreamError), config=MODEL_LIST_RETRY)
    async def list_models(self, bearer: str) -> Dict[str, Any]:
        """Fetch the upstream model list."""
        response = await self._client.get(f"{self.base_url}/models", headers=self.build_headers(bearer))
        if response.status_code >= 400:
            raise UpstreamError(response.status_code, "Failed to list upstream models", body=_error_body(response))
        return response.json()
