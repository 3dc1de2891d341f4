from __future__ import annotations

import logging

import httpx
from fastapi import FastAPI, Request, Response, status
from uvicorn.logging import DefaultFormatter

from .config import RootConfig, ServiceCfg, build_credential, load_config
from .errors import CredentialRefreshError
from .forwarder import Forwarder

_handler = logging.StreamHandler()
_handler.setFormatter(DefaultFormatter(fmt="%(levelprefix)s %(message)s", use_colors=True))
_root = logging.getLogger()
_root.handlers.clear()
_root.addHandler(_handler)
_root.setLevel(logging.INFO)

logger = logging.getLogger(__name__)

# response headers recomputed by the ASGI server
_SKIPPED_RESPONSE_HEADERS = frozenset({"content-length", "content-encoding", "transfer-encoding", "connection"})

app = FastAPI(title="Renewable Credential Relay", version="1.0.0")

_config: RootConfig | None = None
_forwarder: Forwarder | None = None


@app.on_event("startup")
async def _startup() -> None:
    global _config, _forwarder  # noqa: PLW0603

    _config = load_config()
    service = _config.service or ServiceCfg()
    _forwarder = Forwarder(str(service.upstream), build_credential(_config.credential))
    logger.info("Relaying to %s using %s credentials", service.upstream, _config.credential.type)


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _forwarder  # noqa: PLW0603

    if _forwarder:
        await _forwarder.aclose()
        _forwarder = None


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"])
async def relay(path: str, request: Request) -> Response:
    assert _forwarder is not None
    body = await request.body()
    url = _forwarder.url_for(path)

    logger.info("Forwarding %s %s", request.method, url)
    upstream = await _forwarder.forward(
        request.method,
        path,
        body,
        dict(request.headers),
        params=list(request.query_params.multi_items()),
    )
    logger.info("Upstream response (%s) for %s %s", upstream.status_code, request.method, url)

    headers = {k: v for k, v in upstream.headers.items() if k.lower() not in _SKIPPED_RESPONSE_HEADERS}
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=headers,
        media_type=upstream.headers.get("content-type"),
    )


@app.exception_handler(CredentialRefreshError)
async def _refresh_error(_: Request, exc: CredentialRefreshError) -> Response:
    """Return 401 when no token could be obtained for the upstream call."""
    logger.error("Credential refresh failed: %s", exc)
    return Response(
        content='{"error": "Credential refresh failed"}',
        media_type="application/json",
        status_code=status.HTTP_401_UNAUTHORIZED,
    )


@app.exception_handler(httpx.RequestError)
async def _httpx_error(_: Request, exc: httpx.RequestError) -> Response:
    """Return a generic 502 response on httpx failures."""
    logger.error("Upstream request error: %s", exc)
    return Response(
        content='{"error": "Upstream failure"}',
        media_type="application/json",
        status_code=status.HTTP_502_BAD_GATEWAY,
    )
