"""
Responses proxy service: sticky session routing + prompt_cache_key override.

Sits in front of a single upstream Responses API:
  POST /codex/v1/responses   (and /v1/responses, forwarded as /codex/v1/responses)

For those requests it:
- resolves one session id and writes it to x-session-id / conversation_id /
  session_id so the upstream router keeps a conversation on one backend;
- normalizes prompt_cache_key in the JSON body (blank -> null);
- if the caller declared a cache key, forces it back into the JSON or SSE
  response, streaming SSE line by line.

OPTIONS is answered locally (CORS preflight). Every other request is forwarded
to the upstream untouched.
"""

from __future__ import annotations

import contextlib
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncGenerator, AsyncIterator, Dict

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from body_rewriter import ResponseBody, rewrite_response
from cache_key import PreparedBody, prepare_request_body
from config import load_config
from logger import request_body_log_line, setup_logging
from session import inject_session_headers, resolve_provisional
from upstream import LEGACY_RESPONSES_PATH, RESPONSES_PATH, UpstreamClient, forward_headers, response_headers
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging(config.log_path)
dump_config(config)

upstream_client = UpstreamClient(config)


class UpstreamUnavailable(Exception):
    """The upstream could not be reached or failed mid-request."""


@dataclass
class RequestContext:
    """Per-request record used for log lines only."""

    method: str
    path: str
    t0: float = field(default_factory=time.time)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    session_id: str = ""

    def elapsed_ms(self) -> float:
        return (time.time() - self.t0) * 1000


def cors_preflight_headers(request: Request) -> Dict[str, str]:
    """Preflight headers: reflect Origin so credentials are allowed."""
    origin = request.headers.get("origin") or "*"
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
        "Access-Control-Allow-Headers": request.headers.get("access-control-request-headers") or "*",
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }


def apply_cors(request: Request, response: Response) -> None:
    """Add CORS headers to a proxied (non-preflight) response."""
    origin = request.headers.get("origin") or "*"
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers.append("Vary", "Origin")


def log_request_bodies(ctx: RequestContext, prepared: PreparedBody) -> None:
    """One structured line with the request body before and after normalization."""
    if not config.log_request_bodies:
        return
    fields = {
        "request_id": ctx.request_id,
        "path": ctx.path,
        "method": ctx.method,
        "session_id": ctx.session_id,
        "session_source": prepared.session.source,
        "cache_key_declared": prepared.cache_key.declared,
        "body_changed": prepared.changed,
    }
    log.info(
        "%s",
        request_body_log_line(
            fields,
            prepared.original_text,
            prepared.processed_text,
            original_obj=prepared.original_obj,
            processed_obj=prepared.processed_obj,
            max_chars=config.log_body_max_chars,
        ),
    )


async def _stream_and_close(
    resp: httpx.Response, content: AsyncIterator[bytes]
) -> AsyncGenerator[bytes, None]:
    """Yield the body and always release the upstream connection."""
    try:
        async for chunk in content:
            yield chunk
    finally:
        with contextlib.suppress(Exception):
            await resp.aclose()


async def _build_response(resp: httpx.Response, body: ResponseBody) -> Response:
    """Wrap an upstream response for the client, keeping status and headers."""
    if isinstance(body.content, bytes):
        await resp.aclose()
        # Starlette computes content-length for buffered bodies.
        out: Response = Response(content=body.content, status_code=resp.status_code)
        headers = response_headers(
            resp.headers, drop_content_length=True, drop_content_encoding=body.decoded
        )
    else:
        out = StreamingResponse(_stream_and_close(resp, body.content), status_code=resp.status_code)
        headers = response_headers(
            resp.headers,
            drop_content_length=body.rewritten or body.decoded,
            drop_content_encoding=body.decoded,
        )
    for k, v in headers:
        out.headers.append(k, v)
    return out


async def _send_upstream(
    request: Request,
    method: str,
    url: str,
    headers: httpx.Headers,
    content: bytes | None,
    req_id: str,
) -> httpx.Response:
    client: httpx.AsyncClient = request.app.state.http_client
    try:
        return await upstream_client.send(client, method, url, headers, content, req_id)
    except httpx.HTTPError as e:
        log.warning("Upstream request failed req_id=%s url=%s err=%r", req_id, url, e)
        raise UpstreamUnavailable(f"Upstream request failed: {type(e).__name__}") from e


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan context manager for FastAPI application.

    Owns the upstream connection pool shared by all requests.
    """
    app.state.http_client = upstream_client.create_client()

    yield  # Application is running

    with contextlib.suppress(Exception):
        await app.state.http_client.aclose()


app = FastAPI(
    title="responses-proxy",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable) -> Response:
    """Answer 502 with the same CORS headers a proxied response gets."""
    response = JSONResponse({"detail": str(exc)}, status_code=502)
    apply_cors(request, response)
    return response


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.options("/{path:path}")
async def cors_preflight(request: Request, path: str) -> Response:
    """Answer every preflight locally; nothing reaches upstream."""
    return Response(status_code=204, headers=cors_preflight_headers(request))


@app.post(RESPONSES_PATH)
@app.post(LEGACY_RESPONSES_PATH)
async def responses_proxy(request: Request) -> Response:
    """Forward a Responses API call with sticky session headers and cache key override."""
    ctx = RequestContext(method=request.method, path=request.url.path)
    headers_in = request.headers
    query = request.query_params

    session = resolve_provisional(headers_in, query, config.session_cookie_name)

    raw = await request.body()
    prepared = prepare_request_body(
        raw,
        headers_in.get("content-type") or "",
        headers_in,
        query,
        session,
    )
    ctx.session_id = prepared.session.final

    log.info(
        "Incoming responses req_id=%s path=%s session_id=%s source=%s cache_key_declared=%s",
        ctx.request_id,
        ctx.path,
        ctx.session_id,
        prepared.session.source,
        prepared.cache_key.declared,
    )
    log_request_bodies(ctx, prepared)

    out_headers = forward_headers(headers_in.items(), drop_content_length=prepared.changed)
    inject_session_headers(out_headers, ctx.session_id)

    url = upstream_client.build_url(ctx.path, request.url.query)
    resp = await _send_upstream(request, request.method, url, out_headers, prepared.content, ctx.request_id)

    try:
        body = await rewrite_response(resp, prepared.cache_key)
    except Exception:
        await resp.aclose()
        raise

    response = await _build_response(resp, body)
    apply_cors(request, response)

    log.info(
        "Completed responses req_id=%s session_id=%s status=%s body=%s ms=%.1f",
        ctx.request_id,
        ctx.session_id,
        resp.status_code,
        body.mode,
        ctx.elapsed_ms(),
    )
    return response


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"])
async def passthrough(request: Request, path: str) -> Response:
    """Forward anything else to the upstream host unmodified."""
    ctx = RequestContext(method=request.method, path=request.url.path)
    raw = await request.body()
    url = upstream_client.build_url(ctx.path, request.url.query, rewrite_legacy_path=False)
    resp = await _send_upstream(
        request,
        request.method,
        url,
        forward_headers(request.headers.items()),
        raw or None,
        ctx.request_id,
    )
    log.debug("Passthrough req_id=%s %s %s status=%s", ctx.request_id, ctx.method, ctx.path, resp.status_code)
    return await _build_response(resp, ResponseBody(content=resp.aiter_raw(), mode="passthrough"))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
