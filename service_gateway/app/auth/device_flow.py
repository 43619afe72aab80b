"""
GitHub device flow and Copilot bearer exchange.

The device flow yields a long-lived GitHub OAuth token (the exchange token);
the exchange endpoint trades it for a short-lived upstream bearer.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from shared.config import BaseConfig
from shared.errors import AuthenticationError
from shared.logging import get_logger, mask_secret

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
DEVICE_FLOW_SCOPE = "read:user"
SLOW_DOWN_INCREMENT = 5


class ExchangeRejectedError(AuthenticationError):
    """The exchange token itself was refused; re-authentication is required."""

    def __init__(self, message: str = "Exchange token rejected", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


@dataclass(frozen=True)
class DeviceCode:
    """Device authorization grant issued by GitHub."""

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


@dataclass(frozen=True)
class ExchangeResult:
    """Short-lived upstream bearer returned by the exchange endpoint."""

    token: str
    expires_at: float
    refresh_in: Optional[float] = None


class GitHubExchangeClient:
    """HTTP client for the device flow and the bearer exchange."""

    def __init__(
        self,
        config: BaseConfig,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.logger = get_logger("gateway.auth.device_flow")
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _github_headers(self, exchange_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "accept": "application/json",
            "content-type": "application/json",
            "editor-version": self.config.editor_version,
            "editor-plugin-version": f"copilot-chat/{self.config.copilot_chat_version}",
            "user-agent": f"GitHubCopilotChat/{self.config.copilot_chat_version}",
            "x-github-api-version": self.config.github_api_version,
            "x-vscode-user-agent-library-version": "electron-fetch",
        }
        if exchange_token:
            headers["authorization"] = f"token {exchange_token}"
        return headers

    async def request_device_code(self) -> DeviceCode:
        """Start the device flow."""
        try:
            response = await self._client.post(
                f"{self.config.github_base_url}/login/device/code",
                json={"client_id": self.config.github_client_id, "scope": DEVICE_FLOW_SCOPE},
                headers=self._github_headers(),
            )
        except httpx.HTTPError as exc:
            raise AuthenticationError("Device flow request failed", details={"error": str(exc)}) from exc
        if response.status_code >= 400:
            raise AuthenticationError(
                "Failed to start device flow",
                details={"status_code": response.status_code},
            )
        try:
            data = response.json()
            return DeviceCode(
                device_code=data["device_code"],
                user_code=data["user_code"],
                verification_uri=data["verification_uri"],
                expires_in=int(data.get("expires_in", self.config.device_flow_timeout_seconds)),
                interval=int(data.get("interval", 5)),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise AuthenticationError("Device flow returned an incomplete payload", details={"error": str(exc)}) from exc

    async def poll_access_token(self, device_code: DeviceCode, timeout: Optional[float] = None) -> str:
        """Poll until the user approves the device code; return the exchange token."""
        deadline = time.monotonic() + min(
            timeout if timeout is not None else self.config.device_flow_timeout_seconds,
            device_code.expires_in,
        )
        interval = max(1, device_code.interval)

        while True:
            await self._sleep(interval)
            try:
                response = await self._client.post(
                    f"{self.config.github_base_url}/login/oauth/access_token",
                    json={
                        "client_id": self.config.github_client_id,
                        "device_code": device_code.device_code,
                        "grant_type": DEVICE_CODE_GRANT,
                    },
                    headers=self._github_headers(),
                )
            except httpx.HTTPError as exc:
                raise AuthenticationError("Device flow poll request failed", details={"error": str(exc)}) from exc

            if response.status_code >= 400:
                self.logger.warning("Device flow poll failed", status_code=response.status_code)
            else:
                try:
                    data = response.json()
                except ValueError as exc:
                    raise AuthenticationError("Device flow poll returned invalid JSON") from exc
                token = data.get("access_token")
                if token:
                    self.logger.info("Device flow approved", token=mask_secret(token))
                    return token

                error = data.get("error")
                if error == "slow_down":
                    interval = int(data.get("interval", interval + SLOW_DOWN_INCREMENT))
                elif error == "expired_token":
                    raise AuthenticationError("Device code expired before approval")
                elif error == "access_denied":
                    raise AuthenticationError("Device flow was denied by the user")
                elif error and error != "authorization_pending":
                    raise AuthenticationError(
                        "Device flow failed",
                        details={"error": error, "description": data.get("error_description")},
                    )

            if time.monotonic() >= deadline:
                raise AuthenticationError("Timed out waiting for device flow approval")

    async def exchange(self, exchange_token: str) -> ExchangeResult:
        """Trade the exchange token for a short-lived upstream bearer."""
        try:
            response = await self._client.get(
                f"{self.config.github_api_base_url}/copilot_internal/v2/token",
                headers=self._github_headers(exchange_token),
            )
        except httpx.HTTPError as exc:
            raise AuthenticationError("Bearer exchange request failed", details={"error": str(exc)}) from exc

        if response.status_code in (401, 403):
            raise ExchangeRejectedError(details={"status_code": response.status_code})
        if response.status_code >= 400:
            raise AuthenticationError(
                "Bearer exchange failed",
                details={"status_code": response.status_code},
            )

        data = response.json()
        token = data.get("token")
        if not token or "expires_at" not in data:
            raise AuthenticationError("Bearer exchange returned an incomplete payload")
        return ExchangeResult(
            token=token,
            expires_at=float(data["expires_at"]),
            refresh_in=float(data["refresh_in"]) if data.get("refresh_in") is not None else None,
        )
