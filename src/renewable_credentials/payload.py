from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class TokenPayload:
    """Immutable snapshot of an acquired bearer token.

    ``expires_at`` must be timezone aware. A payload without an expiry is
    never reused by :class:`~renewable_credentials.credential.RenewableCredential`.
    """

    access_token: str
    token_type: str
    expires_at: datetime | None = None
    account_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.access_token, str) or not self.access_token:
            raise ValueError("access_token must be a non-empty string")
        if not isinstance(self.token_type, str) or not self.token_type:
            raise ValueError("token_type must be a non-empty string")
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            raise ValueError("expires_at must be timezone aware")

    @property
    def expires_on(self) -> int | None:
        """Expiry as whole seconds since the epoch, truncated."""
        if self.expires_at is None:
            return None
        return math.floor(self.expires_at.timestamp())

    @property
    def authorization(self) -> str:
        return f"{self.token_type} {self.access_token}"

    def __repr__(self) -> str:  # keep the secret out of logs and tracebacks
        return (
            f"TokenPayload(token_type={self.token_type!r}, expires_at={self.expires_at!r}, "
            f"account_id={self.account_id!r})"
        )
