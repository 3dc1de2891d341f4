"""Asynchronous forwarder that relays requests to the management API with a signed token."""

from __future__ import annotations

from typing import Mapping, Sequence

import httpx

from .credential import RenewableCredential
from .signer import CredentialAuth

# hop-by-hop headers and the inbound credential never travel upstream
_DROPPED_HEADERS = frozenset({"authorization", "host", "content-length", "connection", "transfer-encoding"})


class Forwarder:
    """Forwarder with a shared :class:`httpx.AsyncClient` signed by *credential*."""

    _TIMEOUT = httpx.Timeout(600.0)  # 10 minutes

    def __init__(self, upstream: str, credential: RenewableCredential):
        self._upstream = upstream.rstrip("/")
        self._credential = credential
        self._client = httpx.AsyncClient(timeout=self._TIMEOUT, auth=CredentialAuth(credential))

    @property
    def credential(self) -> RenewableCredential:
        return self._credential

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._credential.aclose()

    # ---------------------------------------------------------------------
    # Public helpers
    # ---------------------------------------------------------------------
    def url_for(self, path: str) -> str:
        return f"{self._upstream}/{path.lstrip('/')}"

    async def forward(
        self,
        method: str,
        path: str,
        body: bytes,
        headers: Mapping[str, str],
        params: Mapping[str, str] | Sequence[tuple[str, str]] | None = None,
    ) -> httpx.Response:
        url = self.url_for(path)
        out_headers = {k: v for k, v in headers.items() if k.lower() not in _DROPPED_HEADERS}

        async def _send() -> httpx.Response:
            return await self._client.request(
                method,
                url,
                content=body or None,
                headers=out_headers,
                params=params,
            )

        resp = await _send()
        if resp.status_code >= 500:
            await resp.aclose()
            resp = await _send()
        return resp
