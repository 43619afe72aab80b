"""
Adapters package for the Gateway Service.

Contains the HTTP client for the upstream provider and the model catalog
built from it. Adapters map transport failures to shared errors and stay
free of side effects outside explicit calls.
"""

from .model_catalog import ModelCatalog
from .upstream_client import UpstreamClient, UpstreamStream

__all__ = [
    "ModelCatalog",
    "UpstreamClient",
    "UpstreamStream",
]
