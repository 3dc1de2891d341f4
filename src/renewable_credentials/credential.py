"""Renewable bearer credential.

A :class:`RenewableCredential` caches the last :class:`TokenPayload` handed
out by its :class:`TokenAcquirer` and fetches a new one when the cached token
is missing, has no known expiry, belongs to a different account than the one
requested, or is within ``renewal_margin`` seconds of expiring.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from types import TracebackType
from typing import Callable

from .acquirers import (
    ARM_RESOURCE,
    MSI_DEFAULT_PORT,
    AzureCliTokenAcquirer,
    CliRunner,
    MsiTokenAcquirer,
    TokenAcquirer,
    run_az,
)
from .errors import AcquisitionError, ConfigurationError, CredentialRefreshError
from .payload import TokenPayload

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_MARGIN = 270  # 4.5 minutes


class RenewableCredential:
    """Bearer credential that refreshes itself through a pluggable acquirer."""

    def __init__(
        self,
        acquirer: TokenAcquirer,
        *,
        current: TokenPayload | None = None,
        renewal_margin: int = DEFAULT_RENEWAL_MARGIN,
        desired_account_id: str | None = None,
        clock: Callable[[], float] = time.time,
        name: str | None = None,
    ) -> None:
        if not isinstance(acquirer, TokenAcquirer):
            raise ConfigurationError("acquirer must be a TokenAcquirer")
        if isinstance(renewal_margin, bool) or not isinstance(renewal_margin, int) or renewal_margin < 0:
            raise ConfigurationError("renewal_margin must be a non-negative integer")
        if current is not None and not isinstance(current, TokenPayload):
            raise ConfigurationError("current must be a TokenPayload")

        self._acquirer = acquirer
        self._current = current
        self._renewal_margin = renewal_margin
        self._clock = clock
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None
        self.desired_account_id = desired_account_id
        self.name = name or type(acquirer).__name__

    @property
    def acquirer(self) -> TokenAcquirer:
        return self._acquirer

    @property
    def current(self) -> TokenPayload | None:
        return self._current

    @property
    def renewal_margin(self) -> int:
        return self._renewal_margin

    def _refresh_lock(self) -> asyncio.Lock:
        # asyncio locks bind to the loop they first wait on
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def needs_refresh(self, now: float | None = None) -> bool:
        current = self._current
        if current is None or current.expires_on is None:
            return True
        if self.desired_account_id and self.desired_account_id != current.account_id:
            return True
        if now is None:
            now = self._clock()
        return current.expires_on - math.floor(now) < self._renewal_margin

    async def get_token(self) -> TokenPayload:
        """Return a usable token, refreshing it first when required.

        Raises:
            CredentialRefreshError: the acquirer failed. A previously cached
                payload is kept as-is.
        """
        if not self.needs_refresh():
            logger.debug("Reusing cached token for %s", self.name)
            assert self._current is not None
            return self._current

        async with self._refresh_lock():
            # another caller may have refreshed while we waited
            if not self.needs_refresh():
                assert self._current is not None
                return self._current

            account = self.desired_account_id
            try:
                payload = await self._acquirer.fetch(account)
            except AcquisitionError as exc:
                logger.warning("Token refresh failed for %s: %s", self.name, exc)
                raise CredentialRefreshError(self.name, account, exc) from exc

            self._current = payload
            logger.info("Refreshed token for %s, expires on %s", self.name, payload.expires_on)
            return payload

    async def aclose(self) -> None:
        await self._acquirer.aclose()

    async def __aenter__(self) -> RenewableCredential:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


def create_msi_credential(
    port: int = MSI_DEFAULT_PORT,
    resource: str = ARM_RESOURCE,
    renewal_margin: int = DEFAULT_RENEWAL_MARGIN,
) -> RenewableCredential:
    """Credential backed by the VM managed identity endpoint; the first token is fetched lazily."""
    return RenewableCredential(
        MsiTokenAcquirer(port=port, resource=resource),
        renewal_margin=renewal_margin,
        name=f"managed identity ({resource})",
    )


async def create_azure_cli_credential(
    runner: CliRunner = run_az,
    renewal_margin: int = DEFAULT_RENEWAL_MARGIN,
) -> RenewableCredential:
    """Credential for the Azure CLI's default subscription.

    The subscription lookup and the first token fetch run concurrently; both
    must succeed for the credential to be created. When one fails the other
    is cancelled.
    """
    acquirer = AzureCliTokenAcquirer(runner)
    lookup = asyncio.ensure_future(acquirer.default_subscription())
    first = asyncio.ensure_future(acquirer.fetch())
    try:
        subscription, token = await asyncio.gather(lookup, first)
    except BaseException:
        for task in (lookup, first):
            task.cancel()
        await asyncio.gather(lookup, first, return_exceptions=True)
        raise
    return RenewableCredential(
        acquirer,
        current=token,
        renewal_margin=renewal_margin,
        desired_account_id=subscription["id"],
        name="Azure CLI",
    )
