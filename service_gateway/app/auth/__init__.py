"""
Upstream credential handling for the Gateway service.
"""

from .credential_manager import CredentialManager
from .device_flow import DeviceCode, ExchangeRejectedError, ExchangeResult, GitHubExchangeClient
from .models import Credential, CredentialState
from .token_store import CredentialStore, FileCredentialStore, InMemoryCredentialStore

__all__ = [
    "Credential",
    "CredentialManager",
    "CredentialState",
    "CredentialStore",
    "DeviceCode",
    "ExchangeRejectedError",
    "ExchangeResult",
    "FileCredentialStore",
    "GitHubExchangeClient",
    "InMemoryCredentialStore",
]
