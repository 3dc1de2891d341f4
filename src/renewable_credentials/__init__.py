"""Renewable bearer credentials for outbound Azure management API calls."""

from .acquirers import (
    AzureCliTokenAcquirer,
    AzureIdentityTokenAcquirer,
    MsiTokenAcquirer,
    StaticTokenAcquirer,
    TokenAcquirer,
)
from .credential import (
    DEFAULT_RENEWAL_MARGIN,
    RenewableCredential,
    create_azure_cli_credential,
    create_msi_credential,
)
from .errors import (
    AcquisitionError,
    ConfigurationError,
    CredentialRefreshError,
    RenewableCredentialsError,
)
from .payload import TokenPayload
from .signer import CredentialAuth, RequestSigner

__all__ = [
    "AcquisitionError",
    "AzureCliTokenAcquirer",
    "AzureIdentityTokenAcquirer",
    "ConfigurationError",
    "CredentialAuth",
    "CredentialRefreshError",
    "DEFAULT_RENEWAL_MARGIN",
    "MsiTokenAcquirer",
    "RenewableCredential",
    "RenewableCredentialsError",
    "RequestSigner",
    "StaticTokenAcquirer",
    "TokenAcquirer",
    "TokenPayload",
    "create_azure_cli_credential",
    "create_msi_credential",
]
