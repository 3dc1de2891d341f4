"""Token acquisition strategies.

Each :class:`TokenAcquirer` knows how to obtain a fresh :class:`TokenPayload`
from one backend. Acquirers never retry; failures surface as
:class:`AcquisitionError` with the original exception chained.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import quote

import httpx
from azure.core.credentials import AccessToken
from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import AzureError
from azure.identity.aio import DefaultAzureCredential

from .errors import AcquisitionError, ConfigurationError
from .payload import TokenPayload

logger = logging.getLogger(__name__)

MSI_DEFAULT_PORT = 50342
ARM_RESOURCE = "https://management.azure.com/"
ARM_SCOPE = "https://management.azure.com/.default"

CliRunner = Callable[..., Awaitable[Any]]


class TokenAcquirer(ABC):
    """Abstract strategy interface for acquiring bearer tokens."""

    async def aclose(self) -> None:  # pragma: no cover - default noop
        """Clean up resources for the acquirer."""
        return None

    @abstractmethod
    async def fetch(self, account_hint: str | None = None) -> TokenPayload:
        """Return a freshly acquired token, optionally for ``account_hint``."""
        raise NotImplementedError


def _build_payload(
    access_token: Any,
    token_type: Any,
    expires_at: datetime | None,
    account_id: str | None = None,
) -> TokenPayload:
    try:
        return TokenPayload(
            access_token=access_token,
            token_type=token_type,
            expires_at=expires_at,
            account_id=account_id,
        )
    except ValueError as exc:
        raise AcquisitionError(f"Invalid token response: {exc}") from exc


def _from_epoch(value: Any, field: str) -> datetime:
    try:
        return datetime.fromtimestamp(int(float(value)), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as exc:
        raise AcquisitionError(f"Invalid token response, {field} is not a timestamp: {value!r}") from exc


def _seconds(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise AcquisitionError(f"Invalid token response, expires_in is not a number: {value!r}") from exc


class StaticTokenAcquirer(TokenAcquirer):
    """Acquirer that hands out a pre-resolved token without an expiry."""

    def __init__(self, token: str, token_type: str = "Bearer") -> None:
        if not isinstance(token, str) or not token:
            raise ConfigurationError("token must be a non-empty string")
        if not isinstance(token_type, str) or not token_type:
            raise ConfigurationError("token_type must be a non-empty string")
        self._token = token
        self._token_type = token_type

    async def fetch(self, account_hint: str | None = None) -> TokenPayload:
        return TokenPayload(access_token=self._token, token_type=self._token_type, account_id=account_hint)


class MsiTokenAcquirer(TokenAcquirer):
    """Acquire tokens from the managed identity endpoint on an Azure VM."""

    _TIMEOUT = httpx.Timeout(30.0)

    def __init__(
        self,
        port: int = MSI_DEFAULT_PORT,
        resource: str = ARM_RESOURCE,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if isinstance(port, bool) or not isinstance(port, int):
            raise ConfigurationError("port must be a number.")
        if not isinstance(resource, str):
            raise ConfigurationError("resource must be a uri of type string.")
        self.port = port
        self.resource = resource
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._TIMEOUT)

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}/oauth2/token"

    def request_body(self) -> str:
        return f"resource={quote(self.resource, safe='')}"

    async def fetch(self, account_hint: str | None = None) -> TokenPayload:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
            "Metadata": "true",
        }
        try:
            resp = await self._client.post(self.url, content=self.request_body(), headers=headers)
        except httpx.HTTPError as exc:
            raise AcquisitionError(f"Failed to reach the managed identity endpoint at {self.url}: {exc}") from exc

        if not resp.is_success:
            raise AcquisitionError(
                f"Managed identity endpoint returned {resp.status_code}. Response body is: {resp.text}"
            )
        try:
            result = resp.json()
        except ValueError as exc:
            raise AcquisitionError(f"Invalid token response, body is not JSON: {resp.text}") from exc
        if not isinstance(result, dict):
            raise AcquisitionError(f"Invalid token response, expected a JSON object: {resp.text}")

        for field in ("token_type", "access_token"):
            if not result.get(field):
                raise AcquisitionError(
                    f"Invalid token response, did not find {field}. Response body is: {resp.text}"
                )

        expires_at: datetime | None = None
        if result.get("expires_on"):
            expires_at = _from_epoch(result["expires_on"], "expires_on")
        elif result.get("expires_in"):
            expires_at = _from_epoch(time.time() + _seconds(result["expires_in"]), "expires_in")

        logger.debug("Acquired managed identity token for %s", self.resource)
        return _build_payload(result["access_token"], result["token_type"], expires_at)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


async def run_az(*args: str) -> Any:
    """Run an Azure CLI command and return its parsed JSON output."""

    executable = shutil.which("az")
    if executable is None:
        raise AcquisitionError("Azure CLI executable 'az' was not found on PATH")

    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            "--output",
            "json",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise AcquisitionError(f"Failed to start Azure CLI: {exc}") from exc
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        await proc.wait()
        raise

    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise AcquisitionError(message or f"az {' '.join(args)} exited with code {proc.returncode}")
    try:
        return json.loads(stdout.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise AcquisitionError(f"az {' '.join(args)} returned invalid JSON") from exc


class AzureCliTokenAcquirer(TokenAcquirer):
    """Acquire tokens by delegating to a locally installed Azure CLI."""

    def __init__(self, runner: CliRunner = run_az) -> None:
        if not callable(runner):
            raise ConfigurationError("runner must be callable")
        self._runner = runner

    async def fetch(self, account_hint: str | None = None) -> TokenPayload:
        args = ["account", "get-access-token"]
        if account_hint:
            args += ["--subscription", account_hint]
        try:
            result = await self._runner(*args)
        except AcquisitionError as exc:
            raise AcquisitionError(f"An error occurred while getting credentials from Azure CLI: {exc}") from exc
        if not isinstance(result, Mapping):
            raise AcquisitionError("Azure CLI returned an unexpected token response")

        logger.debug("Acquired Azure CLI token for subscription %s", result.get("subscription"))
        return _build_payload(
            result.get("accessToken"),
            result.get("tokenType"),
            self._parse_expiry(result),
            result.get("subscription"),
        )

    @staticmethod
    def _parse_expiry(result: Mapping[str, Any]) -> datetime | None:
        if result.get("expires_on"):
            return _from_epoch(result["expires_on"], "expires_on")
        raw = result.get("expiresOn")
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(str(raw))
        except ValueError as exc:
            raise AcquisitionError(f"Invalid token response, expiresOn is not a date: {raw!r}") from exc
        # older CLI versions report local wall-clock time without an offset
        return parsed.astimezone(timezone.utc)

    async def default_subscription(self) -> Mapping[str, Any]:
        try:
            result = await self._runner("account", "show")
        except AcquisitionError as exc:
            raise AcquisitionError(
                f"An error occurred while getting information about the current subscription from Azure CLI: {exc}"
            ) from exc
        if not isinstance(result, Mapping) or not result.get("id"):
            raise AcquisitionError("Azure CLI returned an unexpected subscription response")
        return result

    async def set_default_subscription(self, subscription: str) -> None:
        try:
            await self._runner("account", "set", "--subscription", subscription)
        except AcquisitionError as exc:
            raise AcquisitionError(
                f"An error occurred while setting the current subscription from Azure CLI: {exc}"
            ) from exc


class AzureIdentityTokenAcquirer(TokenAcquirer):
    """Token acquirer that wraps an ``azure-identity`` async credential."""

    def __init__(self, credential: AsyncTokenCredential | None = None, scope: str = ARM_SCOPE) -> None:
        if not isinstance(scope, str) or not scope:
            raise ConfigurationError("scope must be a non-empty string")
        self._owns_credential = credential is None
        self._credential = credential or DefaultAzureCredential()
        self._scope = scope

    async def fetch(self, account_hint: str | None = None) -> TokenPayload:
        try:
            token: AccessToken = await self._credential.get_token(self._scope)
        except AzureError as exc:
            raise AcquisitionError(f"azure-identity could not acquire a token for {self._scope}: {exc}") from exc

        return _build_payload(token.token, "Bearer", _from_epoch(token.expires_on, "expires_on"))

    async def aclose(self) -> None:
        if self._owns_credential:
            await self._credential.close()
