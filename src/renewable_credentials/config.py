"""Configuration loader for credentials and the signing relay.

Reads a YAML file, validates its structure with pydantic, and turns the
``credential`` section into a ready-to-use :class:`RenewableCredential`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, HttpUrl, model_validator

from .acquirers import (
    ARM_RESOURCE,
    ARM_SCOPE,
    MSI_DEFAULT_PORT,
    AzureCliTokenAcquirer,
    AzureIdentityTokenAcquirer,
    MsiTokenAcquirer,
    StaticTokenAcquirer,
    TokenAcquirer,
)
from .credential import DEFAULT_RENEWAL_MARGIN, RenewableCredential

CONFIG_PATH_ENV = "RENEWABLE_CREDENTIALS_CONFIG_PATH"


class CredentialCfg(BaseModel):
    """Which acquisition strategy to use and its parameters."""

    type: Literal["msi", "azcli", "azure", "static"]
    port: int = MSI_DEFAULT_PORT
    resource: str = ARM_RESOURCE
    scope: str = ARM_SCOPE
    subscription: str | None = None
    renewalMargin: int = Field(default=DEFAULT_RENEWAL_MARGIN, ge=0)
    key: str | None = None
    envKey: str | None = None
    tokenType: str = "Bearer"

    @model_validator(mode="after")
    def _check_static_key(self) -> "CredentialCfg":
        if self.type == "static" and not self.token:
            raise ValueError("static credentials require a key or an envKey that resolves to a value")
        return self

    @property
    def token(self) -> str | None:
        """Resolve the static token from ``key`` or ``envKey``."""
        if self.key:
            return self.key
        if self.envKey:
            return os.getenv(self.envKey) or None
        return None


class ServiceCfg(BaseModel):
    port: int = 8096
    upstream: HttpUrl = Field(default="https://management.azure.com", validate_default=True)


class RootConfig(BaseModel):
    service: ServiceCfg | None = None
    credential: CredentialCfg


def default_config_path() -> Path:
    """Return the config path from the environment or the user's home directory."""
    env = os.getenv(CONFIG_PATH_ENV)
    if env:
        return Path(env)
    return Path.home() / ".renewable-credentials.yaml"


def parse_config(raw: dict[str, Any]) -> RootConfig:
    return RootConfig.model_validate(raw)


def load_config(path: str | Path | None = None) -> RootConfig:
    """Parse *path* (default :func:`default_config_path`) into a :class:`RootConfig`."""

    path = Path(path) if path is not None else default_config_path()
    if not path.exists():
        raise FileNotFoundError(path)

    with path.open("rt", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    return parse_config(data)


def build_acquirer(cfg: CredentialCfg) -> TokenAcquirer:
    if cfg.type == "msi":
        return MsiTokenAcquirer(port=cfg.port, resource=cfg.resource)
    if cfg.type == "azcli":
        return AzureCliTokenAcquirer()
    if cfg.type == "azure":
        return AzureIdentityTokenAcquirer(scope=cfg.scope)
    assert cfg.token is not None
    return StaticTokenAcquirer(cfg.token, token_type=cfg.tokenType)


def build_credential(cfg: CredentialCfg) -> RenewableCredential:
    """Create a lazily-fetching credential for *cfg*."""
    return RenewableCredential(
        build_acquirer(cfg),
        renewal_margin=cfg.renewalMargin,
        desired_account_id=cfg.subscription,
        name=f"{cfg.type} credential",
    )
