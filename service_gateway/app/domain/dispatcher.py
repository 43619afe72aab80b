"""
Dispatcher: translation -> admission -> credential -> upstream -> response.
"""

import asyncio
import inspect
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from shared.errors import AuthenticationError, UpstreamError
from shared.logging import get_logger, set_dialect

from ..adapters.model_catalog import ModelCatalog
from ..adapters.upstream_client import UpstreamClient, UpstreamStream
from ..auth.credential_manager import CredentialManager
from ..ratelimit.admission import AdmissionController
from ..translation import Dialect, StreamEvent, translate_request, translate_response, translate_stream
from ..translation.models import CanonicalRequest

DispatchHook = Callable[[str, float, bool], Any]

T = TypeVar("T")


@dataclass
class DispatchResult:
    """Either a whole dialect response body or a lazy stream of events."""

    body: Optional[Dict[str, Any]] = None
    events: Optional[AsyncIterator[StreamEvent]] = None
    status_code: int = 200

    @property
    def is_stream(self) -> bool:
        return self.events is not None


class Dispatcher:
    """Runs one inbound request through the gateway pipeline.

    Admission state and the credential are the only shared mutable state;
    both are injected so tests can substitute fakes.
    """

    def __init__(
        self,
        admission: AdmissionController,
        credentials: CredentialManager,
        upstream: UpstreamClient,
        catalog: Optional[ModelCatalog] = None,
        hooks: Optional[List[DispatchHook]] = None,
        preamble: Optional[str] = None,
    ):
        self.admission = admission
        self.credentials = credentials
        self.upstream = upstream
        self.catalog = catalog
        self.hooks: List[DispatchHook] = list(hooks or [])
        self.preamble = preamble
        self.logger = get_logger("gateway.dispatcher")

    async def dispatch(self, dialect: Dialect, raw: Any) -> DispatchResult:
        start_timestamp = time.time()
        model = raw.get("model") if isinstance(raw, dict) and isinstance(raw.get("model"), str) else "unknown"
        set_dialect(dialect.value)

        try:
            # Malformed payloads fail before they take a pacing slot.
            request = translate_request(
                dialect,
                raw,
                max_tokens_lookup=self.catalog.max_output_tokens if self.catalog else None,
                preamble=self.preamble,
            )
            model = request.model
            await self.admission.check_admission()
            bearer = await self.credentials.get_valid()
            self.logger.info(
                "Dispatching request",
                model=model,
                stream=request.stream,
                messages=len(request.messages),
                tools=len(request.tools or []),
            )

            if request.stream:
                upstream_stream = await self._call_upstream(
                    bearer, lambda token: self.upstream.open_stream(token, request)
                )
                events = self._stream_events(dialect, request, upstream_stream, start_timestamp)
                return DispatchResult(events=events)

            response = await self._call_upstream(
                bearer, lambda token: self.upstream.create_chat_completion(token, request)
            )
            body = translate_response(dialect, response)
        except Exception:
            await self._notify(model, start_timestamp, False)
            raise

        await self._notify(model, start_timestamp, True)
        return DispatchResult(body=body)

    async def _call_upstream(self, bearer: str, call: Callable[[str], Awaitable[T]]) -> T:
        """Run ``call``; on a 401 refresh the credential once and retry once."""
        try:
            return await call(bearer)
        except UpstreamError as exc:
            if exc.status_code != 401:
                raise
            self.logger.warning("Upstream rejected bearer, refreshing credential")

        bearer = await self.credentials.refresh(stale_bearer=bearer)
        try:
            return await call(bearer)
        except UpstreamError as exc:
            if exc.status_code == 401:
                raise AuthenticationError("Upstream rejected the refreshed credential") from exc
            raise

    async def _stream_events(
        self,
        dialect: Dialect,
        request: CanonicalRequest,
        upstream_stream: UpstreamStream,
        start_timestamp: float,
    ) -> AsyncIterator[StreamEvent]:
        success = False
        try:
            failed = False
            async with aclosing(translate_stream(dialect, upstream_stream, model=request.model)) as events:
                async for event in events:
                    failed = failed or event.is_error
                    yield event
            success = not failed
        finally:
            # Runs on client disconnect too; closing the response aborts the upstream fetch.
            await asyncio.shield(self._finish_stream(request.model, upstream_stream, start_timestamp, success))

    async def _finish_stream(
        self,
        model: str,
        upstream_stream: UpstreamStream,
        start_timestamp: float,
        success: bool,
    ) -> None:
        await upstream_stream.aclose()
        self.logger.info("Stream finished", model=model, success=success)
        await self._notify(model, start_timestamp, success)

    async def _notify(self, model: str, start_timestamp: float, success: bool) -> None:
        for hook in self.hooks:
            try:
                result = hook(model, start_timestamp, success)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self.logger.error("Dispatch hook failed", hook=getattr(hook, "__name__", repr(hook)), error=str(exc))
