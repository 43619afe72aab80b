"""
Shared configuration management for the LLM protocol gateway.
"""

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="GATEWAY_",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Upstream provider
    account_type: str = Field(default="individual")
    upstream_base_url: Optional[str] = Field(default=None)
    upstream_timeout_seconds: float = Field(default=600.0)
    editor_version: str = Field(default="vscode/1.99.3")
    copilot_chat_version: str = Field(default="0.26.7")
    github_api_version: str = Field(default="2025-04-01")

    # Credential exchange
    github_base_url: str = Field(default="https://github.com")
    github_api_base_url: str = Field(default="https://api.github.com")
    github_client_id: str = Field(default="Iv1.b507a08c87ecfe98")
    github_token: Optional[str] = Field(default=None)
    device_flow_on_startup: bool = Field(default=False)
    device_flow_timeout_seconds: float = Field(default=900.0)
    token_store_path: str = Field(default="~/.local/share/llm-gateway/credential.json")
    refresh_margin_seconds: float = Field(default=60.0)

    # Admission control
    rate_limit_seconds: float = Field(default=0.0)
    rate_limit_wait: bool = Field(default=False)

    # Translation
    agent_preamble: Optional[str] = Field(default=None)
    model_max_tokens: Dict[str, int] = Field(default_factory=dict)

    @property
    def resolved_upstream_base_url(self) -> str:
        """Upstream chat-completions base URL for the configured account type."""
        if self.upstream_base_url:
            return self.upstream_base_url.rstrip("/")
        if self.account_type == "individual":
            return "https://api.githubcopilot.com"
        return f"https://api.{self.account_type}.githubcopilot.com"


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
