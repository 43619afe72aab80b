"""
Credential lifecycle for the single upstream bearer.

The manager owns one ``Credential``. It hands out the current bearer,
refreshes it proactively once the remaining lifetime drops below the refresh
margin, and guarantees that at most one refresh is in flight: concurrent
callers share the same refresh task and its single result.

When a refresh fails while the old bearer is still alive, the waiters of that
refresh see the error, but later callers keep receiving the old bearer until
it hard-expires. The next attempt is held off for ``REFRESH_RETRY_SECONDS``.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional

from shared.errors import AuthenticationError
from shared.logging import get_logger, mask_secret
from shared.metrics import MetricsCollector

from .device_flow import DeviceCode, ExchangeRejectedError, GitHubExchangeClient
from .models import Credential, CredentialState
from .token_store import CredentialStore

VerificationCallback = Callable[[DeviceCode], Any]

REFRESH_RETRY_SECONDS = 15.0
MIN_BACKGROUND_DELAY_SECONDS = 1.0


def _consume_task_exception(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()


class CredentialManager:
    """Single-flight owner of the upstream credential."""

    def __init__(
        self,
        exchange_client: GitHubExchangeClient,
        store: Optional[CredentialStore] = None,
        *,
        refresh_margin: float = 60.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.exchange_client = exchange_client
        self.store = store
        self.refresh_margin = refresh_margin
        self.metrics = metrics
        self.logger = get_logger("gateway.auth.credentials")
        self._clock = clock
        self._sleep = sleep

        self._credential: Optional[Credential] = None
        self._state = CredentialState.UNAUTHENTICATED
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self._retry_after: Optional[float] = None
        self._background: Optional[asyncio.Task] = None

    @property
    def state(self) -> CredentialState:
        return self._state

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    async def load(self) -> bool:
        """Restore a persisted credential; return True if one was found."""
        if self.store is None:
            return False
        payload = await self.store.load()
        if not payload:
            return False

        credential = Credential.from_dict(payload, refresh_margin=self.refresh_margin)
        self._credential = credential
        if credential.is_expired(self._clock()):
            self._state = CredentialState.PENDING_EXCHANGE
        else:
            self._state = CredentialState.AUTHENTICATED
        self.logger.info("Loaded persisted credential", state=self._state.value, expires_at=credential.expires_at)
        return True

    async def authenticate(self, exchange_token: str) -> str:
        """Adopt an exchange token and obtain a bearer for it."""
        self._credential = Credential(
            bearer=None,
            expires_at=0.0,
            exchange_token=exchange_token,
            refresh_margin=self.refresh_margin,
        )
        self._retry_after = None
        self._state = CredentialState.PENDING_EXCHANGE
        return await self._join_refresh(force=True)

    async def obtain_initial(self, on_verification: Optional[VerificationCallback] = None) -> str:
        """Run the device flow end to end and return the first bearer.

        ``on_verification`` receives the ``DeviceCode`` so a caller can show
        the user code and verification URL; it may be a coroutine function.
        """
        self._state = CredentialState.PENDING_EXCHANGE
        try:
            device_code = await self.exchange_client.request_device_code()
            if on_verification is None:
                self.logger.info(
                    "Device flow started",
                    user_code=device_code.user_code,
                    verification_uri=device_code.verification_uri,
                )
            else:
                result = on_verification(device_code)
                if inspect.isawaitable(result):
                    await result
            exchange_token = await self.exchange_client.poll_access_token(device_code)
        except AuthenticationError:
            self._state = CredentialState.UNAUTHENTICATED
            raise
        except Exception as exc:
            self._state = CredentialState.UNAUTHENTICATED
            raise AuthenticationError("Device flow failed", details={"error": str(exc)}) from exc
        return await self.authenticate(exchange_token)

    def needs_refresh(self) -> bool:
        """True when a credential exists and is within its refresh margin."""
        credential = self._credential
        return credential is not None and credential.needs_refresh(self._clock())

    async def get_valid(self) -> str:
        """Return the current bearer, refreshing it once it is inside the refresh margin."""
        credential = self._credential
        if credential is None:
            raise AuthenticationError("No upstream credential; device flow authentication is required")
        now = self._clock()
        if credential.bearer and not credential.needs_refresh(now):
            return credential.bearer
        if self._holding_off(credential, now):
            return credential.bearer
        return await self._join_refresh(force=False)

    def _holding_off(self, credential: Credential, now: float) -> bool:
        """True while a failed refresh's backoff lets the old bearer serve."""
        return (
            self._retry_after is not None
            and now < self._retry_after
            and not credential.is_expired(now)
        )

    async def refresh(self, stale_bearer: Optional[str] = None) -> str:
        """Force a refresh, typically after the upstream rejected ``stale_bearer``.

        If another caller already replaced ``stale_bearer`` the current bearer
        is returned without a new exchange.
        """
        return await self._join_refresh(force=True, stale_bearer=stale_bearer)

    async def _join_refresh(self, force: bool, stale_bearer: Optional[str] = None) -> str:
        async with self._lock:
            credential = self._credential
            if credential is None:
                raise AuthenticationError("No upstream credential; device flow authentication is required")

            task = self._inflight
            if task is None:
                now = self._clock()
                usable = credential.bearer is not None and not credential.is_expired(now)
                if not force and usable and not credential.needs_refresh(now):
                    return credential.bearer
                if not force and self._holding_off(credential, now):
                    return credential.bearer
                if force and usable and stale_bearer is not None and credential.bearer != stale_bearer:
                    return credential.bearer

                task = asyncio.get_running_loop().create_task(self._run_refresh(credential))
                task.add_done_callback(_consume_task_exception)
                self._inflight = task
                self._state = CredentialState.REFRESHING

        # A cancelled caller must not cancel the shared refresh.
        refreshed = await asyncio.shield(task)
        return refreshed.bearer

    async def _run_refresh(self, credential: Credential) -> Credential:
        try:
            result = await self.exchange_client.exchange(credential.exchange_token)
        except ExchangeRejectedError:
            self._credential = None
            self._state = CredentialState.UNAUTHENTICATED
            self._record_refresh("rejected")
            self.logger.error("Exchange token rejected; re-authentication required")
            raise
        except AuthenticationError as exc:
            self._fall_back(credential)
            self._record_refresh("failure")
            self.logger.error("Credential refresh failed", error=exc.message, state=self._state.value)
            raise
        except Exception as exc:
            self._fall_back(credential)
            self._record_refresh("failure")
            self.logger.error("Credential refresh failed", error=str(exc), state=self._state.value)
            raise AuthenticationError("Credential refresh failed", details={"error": str(exc)}) from exc
        finally:
            self._inflight = None

        margin = self.refresh_margin
        if result.refresh_in is not None:
            # Refresh when the exchange endpoint asks to, or earlier per the margin.
            margin = max(margin, result.expires_at - self._clock() - result.refresh_in)
        refreshed = credential.with_bearer(result.token, result.expires_at, refresh_margin=margin)
        self._credential = refreshed
        self._retry_after = None
        self._state = CredentialState.AUTHENTICATED
        self._record_refresh("success")
        self.logger.info(
            "Credential refreshed",
            bearer=mask_secret(result.token),
            expires_at=result.expires_at,
            expires_in=round(refreshed.remaining(self._clock())),
        )
        await self._persist(refreshed)
        return refreshed

    def _fall_back(self, credential: Credential) -> None:
        now = self._clock()
        if credential.bearer and not credential.is_expired(now):
            self._state = CredentialState.AUTHENTICATED
            self._retry_after = now + REFRESH_RETRY_SECONDS
        else:
            self._state = CredentialState.UNAUTHENTICATED
            self._retry_after = None

    async def _persist(self, credential: Credential) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(credential.to_dict())
        except Exception as exc:
            self.logger.error("Failed to persist credential", error=str(exc))

    def _record_refresh(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_credential_refresh(outcome)

    def seconds_until_refresh(self) -> Optional[float]:
        credential = self._credential
        if credential is None:
            return None
        if not credential.bearer:
            return 0.0
        now = self._clock()
        delay = credential.remaining(now) - credential.refresh_margin
        if self._holding_off(credential, now):
            delay = max(delay, self._retry_after - now)
        return max(0.0, delay)

    def start_background_refresh(self) -> None:
        """Refresh ahead of expiry on a background task."""
        if self._background is None or self._background.done():
            self._background = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        failures = 0
        while True:
            delay = self.seconds_until_refresh()
            if delay is None:
                self.logger.warning("Background refresh stopped: no credential")
                return
            if failures:
                delay = max(delay, REFRESH_RETRY_SECONDS)
            await self._sleep(max(MIN_BACKGROUND_DELAY_SECONDS, delay))
            try:
                await self._join_refresh(force=False)
                failures = 0
            except AuthenticationError as exc:
                failures += 1
                self.logger.warning("Background refresh failed", error=exc.message, failures=failures)

    async def stop(self) -> None:
        """Cancel the background refresh task."""
        task = self._background
        self._background = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
