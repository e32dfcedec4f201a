"""Reverse proxy from the sandbox port to the nested Core instance.

Served on its own port so the browser treats the nested instance as a
separate origin (its own auth tokens and local storage).
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from diskswap.services.pipeline import PipelineOrchestrator, get_orchestrator

logger = logging.getLogger("diskswap.proxy")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Dropped from upstream responses: framing headers are recomputed, the
# body is already decoded, and the iframe embedding must not be blocked
STRIPPED_RESPONSE_HEADERS = {
    "x-frame-options",
    "content-security-policy",
    "date",
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
}
STRIPPED_REQUEST_HEADERS = {"host", "content-length", "connection", "transfer-encoding"}


def filter_response_headers(headers: httpx.Headers) -> list:
    return [
        (key, value)
        for key, value in headers.multi_items()
        if key.lower() not in STRIPPED_RESPONSE_HEADERS
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=5.0))
    yield
    await app.state.client.aclose()


proxy_app = FastAPI(title="Disk Swap sandbox proxy", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)


@proxy_app.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy(
    path: str,
    request: Request,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Forward any request to the sandbox, or 503 while none is ready."""
    base = orchestrator.sandbox_proxy_url
    if not base:
        return PlainTextResponse("Sandbox not ready\n", status_code=503)

    client: httpx.AsyncClient = request.app.state.client
    target = httpx.URL(base)
    url = target.copy_with(path="/" + path, query=request.url.query.encode())
    headers = [
        (key, value)
        for key, value in request.headers.items()
        if key.lower() not in STRIPPED_REQUEST_HEADERS
    ]
    headers.append(("host", target.netloc.decode()))
    body = None if request.method in ("GET", "HEAD") else await request.body()

    upstream_request = client.build_request(request.method, url, headers=headers, content=body)
    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.HTTPError as e:
        logger.warning(f"Sandbox proxy {request.method} /{path} failed: {e}")
        return PlainTextResponse("Sandbox unreachable\n", status_code=502)

    response = StreamingResponse(
        upstream.aiter_bytes(),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    # Raw list keeps repeated headers such as set-cookie
    response.raw_headers.extend(
        (key.encode("latin-1"), value.encode("latin-1"))
        for key, value in filter_response_headers(upstream.headers)
    )
    return response
