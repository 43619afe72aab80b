"""
Admission controller: minimum-interval pacing in front of upstream calls.
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from shared.errors import RateLimitError
from shared.logging import get_logger
from shared.metrics import MetricsCollector


class AdmissionPolicy(str, Enum):
    """What to do with a call that arrives before its interval has elapsed."""

    REJECT = "reject"
    WAIT = "wait"


class AdmissionController:
    """Process-wide pacing gate with no burst allowance.

    The check and the stamp of the last admitted slot happen under one lock.
    Under the wait policy each caller reserves the next free slot
    (``last + interval``) before sleeping, so concurrent waiters queue behind
    one another instead of computing overlapping wake-up times.
    """

    def __init__(
        self,
        min_interval: float,
        policy: AdmissionPolicy = AdmissionPolicy.REJECT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[MetricsCollector] = None,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = float(min_interval)
        self.policy = AdmissionPolicy(policy)
        self.logger = get_logger("gateway.admission")
        self.metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._last_admitted: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.min_interval > 0

    @property
    def last_admitted(self) -> Optional[float]:
        return self._last_admitted

    async def check_admission(self) -> float:
        """Admit one call; return the time spent waiting.

        Raises RateLimitError under the reject policy when the interval since
        the last admitted call has not elapsed yet.
        """
        if not self.enabled:
            return 0.0

        async with self._lock:
            now = self._clock()
            if self._last_admitted is None:
                self._last_admitted = now
                return 0.0

            next_slot = self._last_admitted + self.min_interval
            wait_time = next_slot - now
            if wait_time <= 0:
                self._last_admitted = now
                return 0.0

            if self.policy is AdmissionPolicy.REJECT:
                self.logger.warning(
                    "Request rejected by admission controller",
                    retry_after_seconds=round(wait_time, 3),
                )
                if self.metrics:
                    self.metrics.record_admission_rejection()
                raise RateLimitError(
                    "Rate limit exceeded, retry later",
                    retry_after=wait_time,
                    details={"min_interval_seconds": self.min_interval},
                )

            # Reserve the slot before releasing the lock.
            self._last_admitted = next_slot

        self.logger.info("Waiting for admission slot", wait_seconds=round(wait_time, 3))
        await self._sleep(wait_time)
        return wait_time
