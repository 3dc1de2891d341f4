"""Exception hierarchy shared by acquirers, credentials and the relay."""

from __future__ import annotations


class RenewableCredentialsError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(RenewableCredentialsError):
    """Invalid constructor or configuration arguments."""


class AcquisitionError(RenewableCredentialsError):
    """The active acquisition strategy could not produce a token."""


class CredentialRefreshError(RenewableCredentialsError):
    """Refreshing a credential failed; wraps the underlying :class:`AcquisitionError`."""

    def __init__(self, credential_name: str, account_id: str | None, cause: AcquisitionError) -> None:
        account = f" (account {account_id})" if account_id else ""
        super().__init__(f"An error occurred while refreshing the access token for {credential_name}{account}: {cause}")
        self.credential_name = credential_name
        self.account_id = account_id
        self.cause = cause
