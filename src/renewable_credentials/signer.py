"""Attach the current bearer token to outgoing requests."""

from __future__ import annotations

from typing import AsyncGenerator, Generator, MutableMapping, Protocol, TypeVar

import httpx

from .credential import RenewableCredential

AUTHORIZATION = "Authorization"


class SignableRequest(Protocol):
    @property
    def headers(self) -> MutableMapping[str, str]: ...  # pragma: no cover


R = TypeVar("R", bound=SignableRequest)


class RequestSigner:
    """Signs requests with the ``Authorization`` header of a :class:`RenewableCredential`."""

    def __init__(self, credential: RenewableCredential) -> None:
        self._credential = credential

    @property
    def credential(self) -> RenewableCredential:
        return self._credential

    async def sign(self, request: R) -> R:
        """Set the authorization header on *request* and return the same object.

        A :class:`~renewable_credentials.errors.CredentialRefreshError` from the
        credential propagates unchanged and leaves *request* untouched.
        """
        token = await self._credential.get_token()
        request.headers[AUTHORIZATION] = token.authorization
        return request


class CredentialAuth(httpx.Auth):
    """``httpx`` auth hook that signs every request of an :class:`httpx.AsyncClient`."""

    def __init__(self, credential: RenewableCredential) -> None:
        self._signer = RequestSigner(credential)

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("CredentialAuth can only be used with httpx.AsyncClient")

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        await self._signer.sign(request)
        yield request
