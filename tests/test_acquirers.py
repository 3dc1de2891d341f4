import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest
from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError
from pytest_httpx import HTTPXMock

from renewable_credentials.acquirers import (
    AzureCliTokenAcquirer,
    AzureIdentityTokenAcquirer,
    MsiTokenAcquirer,
    StaticTokenAcquirer,
    run_az,
)
from renewable_credentials.errors import AcquisitionError, ConfigurationError

MSI_URL = "http://localhost:50342/oauth2/token"

MSI_RESPONSE = {
    "access_token": "eyJ0eXAiOiJKV1QiLCJhbGciOiJSUzI1NiIsIng1d",
    "refresh_token": "",
    "expires_in": "3599",
    "expires_on": "1502930996",
    "not_before": "1502927096",
    "resource": "https://management.azure.com/",
    "token_type": "Bearer",
}


def _fetch_msi(acquirer: MsiTokenAcquirer) -> Any:
    async def _run() -> Any:
        try:
            return await acquirer.fetch()
        finally:
            await acquirer.aclose()

    return asyncio.run(_run())


def test_msi_default_port(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=MSI_URL, method="POST", json=MSI_RESPONSE)

    token = _fetch_msi(MsiTokenAcquirer())

    assert token.access_token == MSI_RESPONSE["access_token"]
    assert token.token_type == "Bearer"
    assert token.expires_on == 1502930996
    assert token.account_id is None

    req = httpx_mock.get_requests()[0]
    assert req.content == b"resource=https%3A%2F%2Fmanagement.azure.com%2F"
    assert req.headers["Metadata"] == "true"
    assert req.headers["Content-Type"].startswith("application/x-www-form-urlencoded")


def test_msi_custom_port_and_resource(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url="http://localhost:50341/oauth2/token", method="POST", json=MSI_RESPONSE)

    _fetch_msi(MsiTokenAcquirer(port=50341, resource="https://management.core.windows.net/"))

    req = httpx_mock.get_requests()[0]
    assert req.content == b"resource=https%3A%2F%2Fmanagement.core.windows.net%2F"


def test_msi_expires_in_fallback(httpx_mock: HTTPXMock) -> None:
    body = {"access_token": "tok", "token_type": "Bearer", "expires_in": "3600"}
    httpx_mock.add_response(url=MSI_URL, method="POST", json=body)

    before = int(datetime.now(timezone.utc).timestamp())
    token = _fetch_msi(MsiTokenAcquirer())

    assert before + 3599 <= token.expires_on <= before + 3601


def test_msi_without_expiry(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=MSI_URL, method="POST", json={"access_token": "tok", "token_type": "Bearer"})

    assert _fetch_msi(MsiTokenAcquirer()).expires_at is None


@pytest.mark.parametrize("missing", ["access_token", "token_type"])
def test_msi_missing_field(httpx_mock: HTTPXMock, missing: str) -> None:
    body = {k: v for k, v in MSI_RESPONSE.items() if k != missing}
    httpx_mock.add_response(url=MSI_URL, method="POST", json=body)

    with pytest.raises(AcquisitionError) as excinfo:
        _fetch_msi(MsiTokenAcquirer())

    assert f"did not find {missing}" in str(excinfo.value)


def test_msi_error_status(httpx_mock: HTTPXMock) -> None:
    error = {"error": "unknown", "error_description": "Failed to retrieve token from the Active directory."}
    httpx_mock.add_response(url=MSI_URL, method="POST", status_code=400, json=error)

    with pytest.raises(AcquisitionError) as excinfo:
        _fetch_msi(MsiTokenAcquirer())

    assert "400" in str(excinfo.value)
    assert "Failed to retrieve token" in str(excinfo.value)


def test_msi_malformed_json(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=MSI_URL, method="POST", text="<html>oops</html>")

    with pytest.raises(AcquisitionError):
        _fetch_msi(MsiTokenAcquirer())


def test_msi_bad_expiry(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=MSI_URL, method="POST", json={**MSI_RESPONSE, "expires_on": "soon"})

    with pytest.raises(AcquisitionError):
        _fetch_msi(MsiTokenAcquirer())


def test_msi_connection_error(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_exception(httpx.ConnectError("refused"))

    with pytest.raises(AcquisitionError) as excinfo:
        _fetch_msi(MsiTokenAcquirer())

    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.parametrize("port", ["50342", 503.42, None, True])
def test_msi_rejects_non_numeric_port(port: object) -> None:
    with pytest.raises(ConfigurationError):
        MsiTokenAcquirer(port=port)  # type: ignore[arg-type]


@pytest.mark.parametrize("resource", [None, 42, b"https://management.azure.com/"])
def test_msi_rejects_non_string_resource(resource: object) -> None:
    with pytest.raises(ConfigurationError):
        MsiTokenAcquirer(resource=resource)  # type: ignore[arg-type]


class _FakeAz:
    def __init__(self, responses: dict[tuple[str, ...], Any]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, ...]] = []

    async def __call__(self, *args: str) -> Any:
        self.calls.append(args)
        result = self.responses[args]
        if isinstance(result, Exception):
            raise result
        return result


CLI_TOKEN = {
    "accessToken": "cli-token",
    "expiresOn": "2030-01-01 10:00:00.000000",
    "expires_on": 1893492000,
    "subscription": "sub-a",
    "tenant": "tenant-a",
    "tokenType": "Bearer",
}


def test_azcli_fetch_with_subscription_hint() -> None:
    runner = _FakeAz({("account", "get-access-token", "--subscription", "sub-a"): CLI_TOKEN})

    token = asyncio.run(AzureCliTokenAcquirer(runner).fetch("sub-a"))

    assert runner.calls == [("account", "get-access-token", "--subscription", "sub-a")]
    assert token.access_token == "cli-token"
    assert token.account_id == "sub-a"
    assert token.expires_on == 1893492000


def test_azcli_fetch_parses_legacy_expiry() -> None:
    legacy = {k: v for k, v in CLI_TOKEN.items() if k != "expires_on"}
    runner = _FakeAz({("account", "get-access-token"): legacy})

    token = asyncio.run(AzureCliTokenAcquirer(runner).fetch())

    expected = datetime(2030, 1, 1, 10, 0, 0).astimezone(timezone.utc)
    assert token.expires_at == expected


def test_azcli_failure_includes_stderr() -> None:
    runner = _FakeAz({("account", "get-access-token"): AcquisitionError("ERROR: Please run 'az login'")})

    with pytest.raises(AcquisitionError) as excinfo:
        asyncio.run(AzureCliTokenAcquirer(runner).fetch())

    assert "az login" in str(excinfo.value)


def test_azcli_missing_access_token() -> None:
    runner = _FakeAz({("account", "get-access-token"): {"tokenType": "Bearer"}})

    with pytest.raises(AcquisitionError):
        asyncio.run(AzureCliTokenAcquirer(runner).fetch())


def test_azcli_subscription_helpers() -> None:
    runner = _FakeAz(
        {
            ("account", "show"): {"id": "sub-a", "name": "Dev"},
            ("account", "set", "--subscription", "sub-b"): None,
        }
    )
    acquirer = AzureCliTokenAcquirer(runner)

    assert asyncio.run(acquirer.default_subscription())["id"] == "sub-a"
    asyncio.run(acquirer.set_default_subscription("sub-b"))
    assert runner.calls[-1] == ("account", "set", "--subscription", "sub-b")


def test_azcli_rejects_non_callable_runner() -> None:
    with pytest.raises(ConfigurationError):
        AzureCliTokenAcquirer("az")  # type: ignore[arg-type]


class _DummyCredential:
    def __init__(self, result: AccessToken | Exception) -> None:
        self._result = result
        self.scopes: list[str] = []
        self.closed = False

    async def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        self.scopes.extend(scopes)
        if isinstance(self._result, Exception):
            raise self._result
        return self._result

    async def close(self) -> None:
        self.closed = True


def test_azure_identity_fetch() -> None:
    cred = _DummyCredential(AccessToken("lib-token", 1893492000))
    acquirer = AzureIdentityTokenAcquirer(cred)  # type: ignore[arg-type]

    token = asyncio.run(acquirer.fetch())

    assert cred.scopes == ["https://management.azure.com/.default"]
    assert token.authorization == "Bearer lib-token"
    assert token.expires_on == 1893492000
    # injected credentials belong to the caller
    asyncio.run(acquirer.aclose())
    assert cred.closed is False


def test_azure_identity_failure() -> None:
    cred = _DummyCredential(ClientAuthenticationError("no credential available"))
    acquirer = AzureIdentityTokenAcquirer(cred, scope="https://vault.azure.net/.default")  # type: ignore[arg-type]

    with pytest.raises(AcquisitionError) as excinfo:
        asyncio.run(acquirer.fetch())

    assert "vault.azure.net" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, ClientAuthenticationError)


def test_static_acquirer() -> None:
    token = asyncio.run(StaticTokenAcquirer("key", token_type="Bearer").fetch("sub"))
    assert token.authorization == "Bearer key"
    assert token.expires_at is None
    assert token.account_id == "sub"

    with pytest.raises(ConfigurationError):
        StaticTokenAcquirer("")


def _install_fake_az(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, body: str) -> None:
    script = tmp_path / "az"
    script.write_text(f"#!/bin/sh\n{body}\n")
    script.chmod(0o755)
    monkeypatch.setenv("PATH", str(tmp_path))


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake az is a POSIX shell script")


@posix_only
def test_run_az_returns_parsed_json(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fake_az(tmp_path, monkeypatch, 'echo "{\\"id\\": \\"sub-a\\", \\"args\\": \\"$*\\"}"')

    result = asyncio.run(run_az("account", "show"))

    assert result == {"id": "sub-a", "args": "account show --output json"}


@posix_only
def test_run_az_nonzero_exit_surfaces_stderr(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fake_az(tmp_path, monkeypatch, 'echo "ERROR: Please run az login" >&2\nexit 1')

    with pytest.raises(AcquisitionError) as excinfo:
        asyncio.run(run_az("account", "show"))

    assert str(excinfo.value) == "ERROR: Please run az login"


@posix_only
def test_run_az_nonzero_exit_without_stderr(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fake_az(tmp_path, monkeypatch, "exit 3")

    with pytest.raises(AcquisitionError) as excinfo:
        asyncio.run(run_az("account", "get-access-token"))

    assert str(excinfo.value) == "az account get-access-token exited with code 3"


@posix_only
def test_run_az_invalid_json(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fake_az(tmp_path, monkeypatch, 'echo "not json"')

    with pytest.raises(AcquisitionError) as excinfo:
        asyncio.run(run_az("account", "show"))

    assert "returned invalid JSON" in str(excinfo.value)
    assert excinfo.value.__cause__ is not None


@posix_only
def test_azcli_fetch_through_run_az_surfaces_stderr(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fake_az(tmp_path, monkeypatch, 'echo "ERROR: Please run az login" >&2\nexit 1')

    with pytest.raises(AcquisitionError) as excinfo:
        asyncio.run(AzureCliTokenAcquirer().fetch())

    assert "ERROR: Please run az login" in str(excinfo.value)
