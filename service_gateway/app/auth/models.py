"""
Credential data types.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional


class CredentialState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PENDING_EXCHANGE = "pending_exchange"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class Credential:
    """The single upstream bearer plus the exchange token that renews it.

    ``expires_at`` is an absolute epoch timestamp in seconds.
    """

    bearer: Optional[str]
    expires_at: float
    exchange_token: str
    refresh_margin: float = 60.0

    def remaining(self, now: float) -> float:
        return self.expires_at - now

    def needs_refresh(self, now: float) -> bool:
        return not self.bearer or self.remaining(now) < self.refresh_margin

    def is_expired(self, now: float) -> bool:
        return not self.bearer or self.remaining(now) <= 0

    def with_bearer(self, bearer: str, expires_at: float, refresh_margin: Optional[float] = None) -> "Credential":
        if refresh_margin is None:
            refresh_margin = self.refresh_margin
        return replace(self, bearer=bearer, expires_at=expires_at, refresh_margin=refresh_margin)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bearer": self.bearer,
            "expires_at": self.expires_at,
            "exchange_token": self.exchange_token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], refresh_margin: float = 60.0) -> "Credential":
        return cls(
            bearer=data.get("bearer") or None,
            expires_at=float(data.get("expires_at") or 0),
            exchange_token=data["exchange_token"],
            refresh_margin=refresh_margin,
        )
