"""Response body rewriting: forces the caller's prompt_cache_key into upstream replies."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Tuple, Union

import httpx

from cache_key import CACHE_KEY_FIELD, CacheKeyDecision, dumps_compact
from logger import LOGGER_NAME
from sse_handler import rewrite_sse_stream

log = logging.getLogger(LOGGER_NAME)

COMPRESSED_ENCODINGS = ("gzip", "br", "deflate")


@dataclass
class ResponseBody:
    """Body to hand back to the client.

    ``content`` is bytes for buffered bodies and an async iterator for streams.
    ``rewritten`` means content-length is stale; ``decoded`` means the bytes are
    no longer in the upstream content-encoding.
    """

    content: Union[bytes, AsyncIterator[bytes]]
    mode: str
    rewritten: bool = False
    decoded: bool = False


def is_compressed_encoding(content_encoding: str | None) -> bool:
    ce = (content_encoding or "").lower()
    return any(enc in ce for enc in COMPRESSED_ENCODINGS)


def rewrite_json_text(text: str, prompt_cache_key: Optional[str]) -> Tuple[str, bool]:
    """
    Overwrite top-level prompt_cache_key of a JSON object document.

    Returns the original text unchanged when it does not parse, is not an
    object, or has no prompt_cache_key key.
    """
    try:
        obj = json.loads(text)
    except ValueError:
        log.debug("Upstream JSON body did not parse; returning it unchanged")
        return text, False
    if not isinstance(obj, dict) or CACHE_KEY_FIELD not in obj:
        return text, False
    obj[CACHE_KEY_FIELD] = prompt_cache_key
    return dumps_compact(obj), True


async def rewrite_response(resp: httpx.Response, decision: CacheKeyDecision) -> ResponseBody:
    """
    Pick how the upstream body reaches the client.

    | content-type        | content-encoding | result                       |
    |---------------------|------------------|------------------------------|
    | text/event-stream   | any              | incremental SSE rewrite      |
    | application/json    | identity         | buffered JSON rewrite        |
    | application/json    | gzip/br/deflate  | raw passthrough              |
    | anything else       | any              | raw passthrough              |

    Nothing is touched unless the caller declared a cache key.
    """
    if not decision.declared:
        return ResponseBody(content=resp.aiter_raw(), mode="passthrough")

    content_type = (resp.headers.get("content-type") or "").lower()
    content_encoding = resp.headers.get("content-encoding")

    if "text/event-stream" in content_type:
        return ResponseBody(
            content=rewrite_sse_stream(resp.aiter_bytes(), decision.value),
            mode="sse",
            rewritten=True,
            decoded=True,
        )

    if "application/json" in content_type and not is_compressed_encoding(content_encoding):
        raw = await resp.aread()
        text, changed = rewrite_json_text(raw.decode("utf-8", errors="replace"), decision.value)
        if changed:
            return ResponseBody(
                content=text.encode("utf-8"), mode="json", rewritten=True, decoded=bool(content_encoding)
            )
        return ResponseBody(content=raw, mode="json", decoded=bool(content_encoding))

    return ResponseBody(content=resp.aiter_raw(), mode="passthrough")
