"""
Model-capability catalog.

Maps model id to default max output tokens, built from the upstream model
list and overlaid with static overrides from configuration.
"""

from typing import Any, Dict, List, Optional

from shared.errors import UpstreamError
from shared.logging import get_logger
from shared.retry import RetryError

from .upstream_client import UpstreamClient


class ModelCatalog:
    """In-memory model table consulted by request translation."""

    def __init__(self, upstream: Optional[UpstreamClient] = None, overrides: Optional[Dict[str, int]] = None):
        self.upstream = upstream
        self.overrides = dict(overrides or {})
        self.logger = get_logger("gateway.model_catalog")
        self._models: List[Dict[str, Any]] = []
        self._max_output_tokens: Dict[str, int] = {}

    @property
    def loaded(self) -> bool:
        return bool(self._models)

    def load(self, payload: Dict[str, Any]) -> None:
        """Replace the table with an upstream ``{"data": [...]}`` model list."""
        models = [entry for entry in payload.get("data") or [] if isinstance(entry, dict) and entry.get("id")]
        limits: Dict[str, int] = {}
        for entry in models:
            capabilities = entry.get("capabilities") or {}
            value = (capabilities.get("limits") or {}).get("max_output_tokens")
            if isinstance(value, int) and value > 0:
                limits[entry["id"]] = value
        self._models = models
        self._max_output_tokens = limits
        self.logger.info("Model catalog loaded", models=len(models), with_limits=len(limits))

    async def refresh(self, bearer: str) -> bool:
        """Reload from upstream; keep the previous table on failure."""
        if self.upstream is None:
            return False
        try:
            payload = await self.upstream.list_models(bearer)
        except (UpstreamError, RetryError) as exc:
            self.logger.warning("Model catalog refresh failed", error=str(exc))
            return False
        self.load(payload)
        return True

    def max_output_tokens(self, model: str) -> Optional[int]:
        if model in self.overrides:
            return self.overrides[model]
        return self._max_output_tokens.get(model)

    def as_payload(self) -> Dict[str, Any]:
        data = list(self._models)
        known = {entry["id"] for entry in data}
        for model_id in sorted(self.overrides):
            if model_id not in known:
                data.append({"id": model_id, "object": "model", "owned_by": "gateway"})
        return {"object": "list", "data": data, "has_more": False}
