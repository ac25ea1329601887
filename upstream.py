"""Upstream responses API communication."""

from __future__ import annotations

import logging
import time
from typing import Iterable, List, Tuple

import httpx

from config import AppConfig
from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

RESPONSES_PATH = "/codex/v1/responses"
LEGACY_RESPONSES_PATH = "/v1/responses"
REWRITE_PATHS = frozenset({RESPONSES_PATH, LEGACY_RESPONSES_PATH})

# Hop-by-hop headers (RFC 7230 §6.1) never cross the proxy.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def forward_headers(
    headers: Iterable[Tuple[str, str]],
    *,
    drop_content_length: bool = False,
) -> httpx.Headers:
    """Build headers to send upstream, dropping hop-by-hop and host."""
    out: List[Tuple[str, str]] = []
    for k, v in headers:
        lk = k.lower()
        if lk == "host" or lk in HOP_BY_HOP_HEADERS:
            continue
        if drop_content_length and lk == "content-length":
            continue
        out.append((k, v))
    return httpx.Headers(out)


def response_headers(
    headers: httpx.Headers,
    *,
    drop_content_length: bool = False,
    drop_content_encoding: bool = False,
) -> List[Tuple[str, str]]:
    """Strip hop-by-hop headers (and stale length/encoding) from an upstream response."""
    out: List[Tuple[str, str]] = []
    for k, v in headers.multi_items():
        lk = k.lower()
        if lk in HOP_BY_HOP_HEADERS:
            continue
        if drop_content_length and lk == "content-length":
            continue
        if drop_content_encoding and lk == "content-encoding":
            continue
        out.append((k, v))
    return out


class UpstreamClient:
    """Forward requests to the single configured upstream host."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def build_url(self, path: str, query: str = "", *, rewrite_legacy_path: bool = True) -> str:
        """
        Map an inbound path/query onto the upstream host.

        /v1/responses is served upstream as /codex/v1/responses.
        """
        if rewrite_legacy_path and path == LEGACY_RESPONSES_PATH:
            path = RESPONSES_PATH
        url = f"{self._config.upstream_base_url}{path}"
        if query:
            url = f"{url}?{query}"
        return url

    def create_client(self) -> httpx.AsyncClient:
        """
        Shared AsyncClient for the app lifetime.

        Redirects are handed back to the caller untouched; read timeout is
        disabled so long-lived SSE streams are not cut.
        """
        t = float(self._config.request_timeout_s)
        return httpx.AsyncClient(
            timeout=httpx.Timeout(connect=t, write=t, pool=t, read=None),
            follow_redirects=False,
        )

    async def send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: httpx.Headers,
        content: bytes | None,
        req_id: str,
    ) -> httpx.Response:
        """
        Send a request upstream and return the response with its body unread.

        Callers own the response and must close it.
        """
        t0 = time.time()
        req = client.build_request(method, url, headers=headers, content=content)
        resp = await client.send(req, stream=True, follow_redirects=False)

        dt = (time.time() - t0) * 1000
        log.info(
            "Upstream %s %s req_id=%s status=%s content-type=%s ms=%.1f",
            method,
            url,
            req_id,
            resp.status_code,
            resp.headers.get("content-type", ""),
            dt,
        )
        return resp
