"""
Unit tests for the credential manager and its collaborators.
"""

import asyncio
import json
import os
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from service_gateway.app.auth import (
    CredentialManager,
    CredentialState,
    DeviceCode,
    ExchangeRejectedError,
    ExchangeResult,
    FileCredentialStore,
    GitHubExchangeClient,
    InMemoryCredentialStore,
)
from service_gateway.app.auth.credential_manager import REFRESH_RETRY_SECONDS
from shared.config import get_config
from shared.errors import AuthenticationError

NOW = 1_700_000_000.0


def _manager(exchange_client, payload=None, clock=lambda: NOW, **kwargs):
    store = InMemoryCredentialStore(payload)
    manager = CredentialManager(exchange_client, store, refresh_margin=60.0, clock=clock, **kwargs)
    return manager, store


class TestCredentialManager:
    """Lifecycle and single-flight refresh."""

    @pytest.fixture
    def exchange_client(self):
        client = MagicMock()
        client.exchange = AsyncMock(return_value=ExchangeResult("fresh-bearer", NOW + 1800, 1500))
        return client

    @pytest.fixture
    def expiring_payload(self):
        return {"bearer": "old-bearer", "expires_at": NOW + 30, "exchange_token": "gh-token"}

    @pytest.mark.asyncio
    async def test_fresh_credential_is_returned_without_refresh(self, exchange_client):
        manager, _ = _manager(exchange_client, {"bearer": "b", "expires_at": NOW + 600, "exchange_token": "gh"})
        await manager.load()

        assert manager.needs_refresh() is False
        assert await manager.get_valid() == "b"
        exchange_client.exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_needs_refresh_is_pure(self, exchange_client, expiring_payload):
        manager, _ = _manager(exchange_client, expiring_payload)
        await manager.load()

        assert manager.needs_refresh() is True
        assert manager.needs_refresh() is True
        assert manager.state is CredentialState.AUTHENTICATED
        exchange_client.exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, exchange_client, expiring_payload):
        async def slow_exchange(token):
            await asyncio.sleep(0.01)
            return ExchangeResult("fresh-bearer", NOW + 1800)

        exchange_client.exchange = AsyncMock(side_effect=slow_exchange)
        manager, store = _manager(exchange_client, expiring_payload)
        await manager.load()

        results = await asyncio.gather(*(manager.get_valid() for _ in range(10)))

        assert results == ["fresh-bearer"] * 10
        exchange_client.exchange.assert_awaited_once_with("gh-token")
        assert manager.state is CredentialState.AUTHENTICATED
        assert store.saves == 1
        assert store.payload["bearer"] == "fresh-bearer"

    @pytest.mark.asyncio
    async def test_refresh_failure_reaches_every_waiter(self, exchange_client, expiring_payload):
        async def failing_exchange(token):
            await asyncio.sleep(0.01)
            raise AuthenticationError("Bearer exchange failed")

        exchange_client.exchange = AsyncMock(side_effect=failing_exchange)
        manager, _ = _manager(exchange_client, expiring_payload)
        await manager.load()

        results = await asyncio.gather(*(manager.get_valid() for _ in range(10)), return_exceptions=True)

        assert all(isinstance(result, AuthenticationError) for result in results)
        assert exchange_client.exchange.await_count == 1
        # The old bearer has not hard-expired yet.
        assert manager.state is CredentialState.AUTHENTICATED
        assert manager.credential.bearer == "old-bearer"

    @pytest.mark.asyncio
    async def test_refresh_failure_after_expiry_unauthenticates(self, exchange_client):
        exchange_client.exchange = AsyncMock(side_effect=AuthenticationError("Bearer exchange failed"))
        manager, _ = _manager(exchange_client, {"bearer": "dead", "expires_at": NOW - 5, "exchange_token": "gh"})
        await manager.load()
        assert manager.state is CredentialState.PENDING_EXCHANGE

        with pytest.raises(AuthenticationError):
            await manager.get_valid()

        assert manager.state is CredentialState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_serving_live_bearer(self, exchange_client, expiring_payload):
        now = [NOW]
        exchange_client.exchange = AsyncMock(side_effect=AuthenticationError("Bearer exchange failed"))
        manager, _ = _manager(exchange_client, expiring_payload, clock=lambda: now[0])
        await manager.load()

        with pytest.raises(AuthenticationError):
            await manager.get_valid()

        assert [await manager.get_valid() for _ in range(3)] == ["old-bearer"] * 3
        assert exchange_client.exchange.await_count == 1
        assert manager.state is CredentialState.AUTHENTICATED
        assert manager.seconds_until_refresh() == pytest.approx(REFRESH_RETRY_SECONDS)

        now[0] = NOW + REFRESH_RETRY_SECONDS
        exchange_client.exchange = AsyncMock(return_value=ExchangeResult("fresh-bearer", NOW + 1800))

        assert await manager.get_valid() == "fresh-bearer"
        exchange_client.exchange.assert_awaited_once_with("gh-token")

    @pytest.mark.asyncio
    async def test_backoff_ends_when_old_bearer_expires(self, exchange_client):
        now = [NOW]
        exchange_client.exchange = AsyncMock(side_effect=AuthenticationError("Bearer exchange failed"))
        manager, _ = _manager(
            exchange_client,
            {"bearer": "old-bearer", "expires_at": NOW + 10, "exchange_token": "gh"},
            clock=lambda: now[0],
        )
        await manager.load()
        with pytest.raises(AuthenticationError):
            await manager.get_valid()

        now[0] = NOW + 11
        with pytest.raises(AuthenticationError):
            await manager.get_valid()

        assert exchange_client.exchange.await_count == 2
        assert manager.state is CredentialState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_refresh_in_hint_schedules_next_refresh(self, exchange_client, expiring_payload):
        manager, _ = _manager(exchange_client, expiring_payload)
        await manager.load()

        assert await manager.get_valid() == "fresh-bearer"

        assert manager.credential.refresh_margin == pytest.approx(300.0)
        assert manager.seconds_until_refresh() == pytest.approx(1500.0)

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_authentication_errors(self, exchange_client, expiring_payload):
        exchange_client.exchange = AsyncMock(side_effect=RuntimeError("boom"))
        manager, _ = _manager(exchange_client, expiring_payload)
        await manager.load()

        with pytest.raises(AuthenticationError):
            await manager.get_valid()

    @pytest.mark.asyncio
    async def test_rejected_exchange_token_forces_reauthentication(self, exchange_client, expiring_payload):
        exchange_client.exchange = AsyncMock(side_effect=ExchangeRejectedError())
        manager, _ = _manager(exchange_client, expiring_payload)
        await manager.load()

        with pytest.raises(ExchangeRejectedError):
            await manager.get_valid()

        assert manager.state is CredentialState.UNAUTHENTICATED
        assert manager.credential is None
        with pytest.raises(AuthenticationError):
            await manager.get_valid()
        assert exchange_client.exchange.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_credential_raises(self, exchange_client):
        manager, _ = _manager(exchange_client)

        assert await manager.load() is False
        with pytest.raises(AuthenticationError):
            await manager.get_valid()

    @pytest.mark.asyncio
    async def test_forced_refresh_skips_already_replaced_bearer(self, exchange_client):
        manager, _ = _manager(exchange_client, {"bearer": "new", "expires_at": NOW + 600, "exchange_token": "gh"})
        await manager.load()

        assert await manager.refresh(stale_bearer="old") == "new"
        exchange_client.exchange.assert_not_awaited()

        assert await manager.refresh(stale_bearer="new") == "fresh-bearer"
        exchange_client.exchange.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_refresh(self, exchange_client, expiring_payload):
        gate = asyncio.Event()

        async def gated_exchange(token):
            await gate.wait()
            return ExchangeResult("fresh-bearer", NOW + 1800)

        exchange_client.exchange = AsyncMock(side_effect=gated_exchange)
        manager, _ = _manager(exchange_client, expiring_payload)
        await manager.load()

        first = asyncio.create_task(manager.get_valid())
        await asyncio.sleep(0)
        first.cancel()
        second = asyncio.create_task(manager.get_valid())
        await asyncio.sleep(0)
        gate.set()

        assert await second == "fresh-bearer"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert exchange_client.exchange.await_count == 1

    @pytest.mark.asyncio
    async def test_obtain_initial_runs_device_flow(self, exchange_client):
        device_code = DeviceCode("dev-123", "ABCD-EFGH", "https://github.com/login/device", 900, 5)
        exchange_client.request_device_code = AsyncMock(return_value=device_code)
        exchange_client.poll_access_token = AsyncMock(return_value="gh-new")
        shown = []
        manager, store = _manager(exchange_client)

        bearer = await manager.obtain_initial(shown.append)

        assert bearer == "fresh-bearer"
        assert shown == [device_code]
        exchange_client.exchange.assert_awaited_once_with("gh-new")
        assert manager.state is CredentialState.AUTHENTICATED
        assert store.payload["exchange_token"] == "gh-new"

    @pytest.mark.asyncio
    async def test_obtain_initial_failure_returns_to_unauthenticated(self, exchange_client):
        exchange_client.request_device_code = AsyncMock(side_effect=AuthenticationError("Failed to start device flow"))
        manager, _ = _manager(exchange_client)

        with pytest.raises(AuthenticationError):
            await manager.obtain_initial()

        assert manager.state is CredentialState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_store_failure_is_not_raised(self, exchange_client, expiring_payload):
        manager, store = _manager(exchange_client, expiring_payload)
        await manager.load()
        store.save = AsyncMock(side_effect=OSError("disk full"))

        assert await manager.get_valid() == "fresh-bearer"

    @pytest.mark.asyncio
    async def test_background_refresh_sleeps_until_margin(self, exchange_client, expiring_payload):
        sleeps = []
        second_sleep = asyncio.Event()

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) > 1:
                second_sleep.set()
                await asyncio.Event().wait()

        manager, _ = _manager(exchange_client, expiring_payload, sleep=fake_sleep)
        await manager.load()

        manager.start_background_refresh()
        await asyncio.wait_for(second_sleep.wait(), timeout=1.0)
        await manager.stop()

        assert sleeps == [1.0, pytest.approx(1500.0)]
        exchange_client.exchange.assert_awaited_once()


class TestFileCredentialStore:
    """JSON file persistence."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "credential.json"
        store = FileCredentialStore(str(path))
        payload = {"bearer": "b", "expires_at": NOW, "exchange_token": "gh"}

        await store.save(payload)

        assert await store.load() == payload
        assert oct(os.stat(path).st_mode & 0o777) == "0o600"

    @pytest.mark.asyncio
    async def test_missing_or_corrupt_file_loads_nothing(self, tmp_path):
        path = tmp_path / "credential.json"
        store = FileCredentialStore(str(path))
        assert await store.load() is None

        path.write_text("{not json")
        assert await store.load() is None


class TestGitHubExchangeClient:
    """Device flow and bearer exchange over HTTP."""

    @pytest.fixture
    def config(self):
        return get_config("gateway-test", 0)

    def _client(self, config, handler, sleeps=None):
        async def fake_sleep(seconds):
            if sleeps is not None:
                sleeps.append(seconds)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return GitHubExchangeClient(config, client=http_client, sleep=fake_sleep)

    @pytest.mark.asyncio
    async def test_request_device_code(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/login/device/code"
            assert json.loads(request.content)["client_id"] == config.github_client_id
            return httpx.Response(200, json={
                "device_code": "dev-1",
                "user_code": "WXYZ-1234",
                "verification_uri": "https://github.com/login/device",
                "expires_in": 899,
                "interval": 5,
            })

        client = self._client(config, handler)
        device_code = await client.request_device_code()

        assert device_code == DeviceCode("dev-1", "WXYZ-1234", "https://github.com/login/device", 899, 5)

    @pytest.mark.asyncio
    async def test_poll_honours_pending_and_slow_down(self, config):
        replies = iter([
            {"error": "authorization_pending"},
            {"error": "slow_down"},
            {"access_token": "gh-token", "token_type": "bearer"},
        ])

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["grant_type"] == "urn:ietf:params:oauth:grant-type:device_code"
            return httpx.Response(200, json=next(replies))

        sleeps = []
        client = self._client(config, handler, sleeps)
        token = await client.poll_access_token(DeviceCode("dev-1", "U", "https://x", 900, 5))

        assert token == "gh-token"
        assert sleeps == [5, 5, 10]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", ["expired_token", "access_denied"])
    async def test_poll_terminal_errors(self, config, error):
        client = self._client(config, lambda request: httpx.Response(200, json={"error": error}))

        with pytest.raises(AuthenticationError):
            await client.poll_access_token(DeviceCode("dev-1", "U", "https://x", 900, 5))

    @pytest.mark.asyncio
    async def test_exchange_success(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/copilot_internal/v2/token"
            assert request.headers["authorization"] == "token gh-token"
            return httpx.Response(200, json={"token": "tid=abc", "expires_at": NOW + 1800, "refresh_in": 1500})

        result = await self._client(config, handler).exchange("gh-token")

        assert result == ExchangeResult("tid=abc", NOW + 1800, 1500.0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_exchange_rejected(self, config, status):
        client = self._client(config, lambda request: httpx.Response(status, json={"message": "Bad credentials"}))

        with pytest.raises(ExchangeRejectedError):
            await client.exchange("gh-token")

    @pytest.mark.asyncio
    async def test_exchange_server_error_is_not_a_rejection(self, config):
        client = self._client(config, lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(AuthenticationError) as exc_info:
            await client.exchange("gh-token")

        assert not isinstance(exc_info.value, ExchangeRejectedError)

    @pytest.mark.asyncio
    async def test_network_errors_become_authentication_errors(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = self._client(config, handler)

        with pytest.raises(AuthenticationError):
            await client.request_device_code()
        with pytest.raises(AuthenticationError):
            await client.poll_access_token(DeviceCode("dev-1", "U", "https://x", 900, 5))

    @pytest.mark.asyncio
    async def test_incomplete_device_code_payload(self, config):
        client = self._client(config, lambda request: httpx.Response(200, json={"user_code": "U"}))

        with pytest.raises(AuthenticationError):
            await client.request_device_code()

    @pytest.mark.asyncio
    async def test_unreachable_device_flow_leaves_manager_unauthenticated(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        manager, _ = _manager(self._client(config, handler))

        with pytest.raises(AuthenticationError):
            await manager.obtain_initial()

        assert manager.state is CredentialState.UNAUTHENTICATED
