"""
LLM protocol gateway service.

Accepts dialect A (OpenAI-shaped) and dialect B (Anthropic-shaped) chat
requests and serves them from a single upstream chat-completions provider.
"""

import asyncio
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AuthenticationError, GatewayException, ValidationError
from shared.metrics import MetricsCollector

from .adapters import ModelCatalog, UpstreamClient
from .auth import CredentialManager, CredentialStore, FileCredentialStore, GitHubExchangeClient
from .domain import Dispatcher
from .ratelimit import AdmissionController, AdmissionPolicy
from .translation import Dialect, StreamEvent, render_error

DEFAULT_PORT = 4141

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class GatewayService(BaseService):
    """Gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        *,
        admission: Optional[AdmissionController] = None,
        credentials: Optional[CredentialManager] = None,
        upstream: Optional[UpstreamClient] = None,
        catalog: Optional[ModelCatalog] = None,
        exchange_client: Optional[GitHubExchangeClient] = None,
        store: Optional[CredentialStore] = None,
    ):
        super().__init__("gateway", DEFAULT_PORT, config=config, metrics=metrics)

        self.admission = admission or AdmissionController(
            self.config.rate_limit_seconds,
            AdmissionPolicy.WAIT if self.config.rate_limit_wait else AdmissionPolicy.REJECT,
            metrics=self.metrics,
        )
        self.exchange_client = exchange_client or GitHubExchangeClient(self.config)
        self.credentials = credentials or CredentialManager(
            self.exchange_client,
            store if store is not None else FileCredentialStore(self.config.token_store_path),
            refresh_margin=self.config.refresh_margin_seconds,
            metrics=self.metrics,
        )
        self.upstream = upstream or UpstreamClient(self.config)
        self.catalog = catalog or ModelCatalog(self.upstream, overrides=self.config.model_max_tokens)
        self.dispatcher = Dispatcher(
            self.admission,
            self.credentials,
            self.upstream,
            catalog=self.catalog,
            hooks=[self.metrics.record_dispatch],
            preamble=self.config.agent_preamble,
        )
        self._device_flow_task: Optional[asyncio.Task] = None

        @self.app.on_event("startup")
        async def _startup():
            await self._initialize_credentials()

        @self.app.on_event("shutdown")
        async def _shutdown():
            if self._device_flow_task is not None:
                self._device_flow_task.cancel()
            await self.credentials.stop()
            await self.upstream.close()
            await self.exchange_client.close()

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    async def _initialize_credentials(self) -> None:
        """Load or acquire the upstream credential without blocking startup on the user."""
        try:
            loaded = await self.credentials.load()
            if not loaded and self.config.github_token:
                await self.credentials.authenticate(self.config.github_token)
        except AuthenticationError as exc:
            self.logger.error("Credential initialization failed", error=exc.message)

        if self.credentials.credential is not None:
            await self._on_authenticated()
        elif self.config.device_flow_on_startup:
            self._device_flow_task = asyncio.get_running_loop().create_task(self._run_device_flow())
        else:
            self.logger.warning("No upstream credential; requests will fail until authenticated")

    async def _run_device_flow(self) -> None:
        try:
            await self.credentials.obtain_initial()
        except AuthenticationError as exc:
            self.logger.error("Device flow failed", error=exc.message)
            return
        await self._on_authenticated()

    async def _on_authenticated(self) -> None:
        self.credentials.start_background_refresh()
        await self._refresh_catalog()

    async def _refresh_catalog(self) -> None:
        try:
            bearer = await self.credentials.get_valid()
        except AuthenticationError as exc:
            self.logger.warning("Skipping model catalog refresh", error=exc.message)
            return
        await self.catalog.refresh(bearer)

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "credential": self.credentials.state.value,
            "model_catalog": "ok" if self.catalog.loaded else "empty",
        }

    def _error_response(self, dialect: Dialect, exc: Exception) -> JSONResponse:
        if isinstance(exc, GatewayException):
            self.logger.warning(
                "Request failed",
                dialect=dialect.value,
                code=exc.code,
                message=exc.message,
                status_code=exc.status_code,
            )
            self.metrics.record_error(exc.code)
        else:
            self.logger.error("Unhandled gateway error", dialect=dialect.value, error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
        status_code, body, headers = render_error(dialect, exc)
        return JSONResponse(status_code=status_code, content=body, headers=headers)

    async def _encode_events(self, events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
        async with aclosing(events) as stream:
            async for event in stream:
                yield event.encode()

    async def _handle(self, dialect: Dialect, request: Request):
        try:
            raw: Any = await request.json()
        except ValueError:
            return self._error_response(dialect, ValidationError("Request body must be valid JSON"))

        try:
            result = await self.dispatcher.dispatch(dialect, raw)
        except Exception as exc:
            return self._error_response(dialect, exc)

        if result.is_stream:
            return StreamingResponse(
                self._encode_events(result.events),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )
        return JSONResponse(status_code=result.status_code, content=result.body)

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "gateway",
                "status": "running",
                "credential": self.credentials.state.value,
            }

        @self.app.post("/chat/completions")
        @self.app.post("/v1/chat/completions")
        async def chat_completions(request: Request):
            """Dialect A chat completions."""
            return await self._handle(Dialect.OPENAI, request)

        @self.app.post("/messages")
        @self.app.post("/v1/messages")
        async def messages(request: Request):
            """Dialect B messages."""
            return await self._handle(Dialect.ANTHROPIC, request)

        @self.app.get("/models")
        @self.app.get("/v1/models")
        async def list_models():
            """Upstream model list, overlaid with configured models."""
            if not self.catalog.loaded and self.credentials.credential is not None:
                await self._refresh_catalog()
            return self.catalog.as_payload()


def create_app():
    """Create FastAPI application."""
    service = GatewayService()
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
