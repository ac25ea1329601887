"""Server-Sent Events (SSE) handling for streaming responses."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, List, Optional

from cache_key import CACHE_KEY_FIELD, dumps_compact
from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def is_done_data_line(line: str) -> bool:
    """
    Accept: "data:[DONE]" / "data: [DONE]" / "data:    [DONE]" (tolerate leading whitespace)
    """
    if not line.startswith(DATA_PREFIX):
        return False
    return line[len(DATA_PREFIX):].lstrip() == DONE_SENTINEL


def _override_cache_key(obj: Any, prompt_cache_key: Optional[str]) -> bool:
    """
    Force prompt_cache_key into a parsed SSE event in place.

    The ``response`` envelope of Responses API events wins; a top-level key is
    only overwritten when it already exists.
    """
    if not isinstance(obj, dict):
        return False
    envelope = obj.get("response")
    if isinstance(envelope, dict):
        envelope[CACHE_KEY_FIELD] = prompt_cache_key
        return True
    if CACHE_KEY_FIELD in obj:
        obj[CACHE_KEY_FIELD] = prompt_cache_key
        return True
    return False


def rewrite_sse_line(line: str, prompt_cache_key: Optional[str]) -> str:
    """Rewrite a single SSE line (without its line ending). Never raises."""
    if not line.startswith(DATA_PREFIX) or is_done_data_line(line):
        return line
    payload = line[len(DATA_PREFIX):].lstrip()
    if not payload:
        return line

    try:
        obj = json.loads(payload)
    except ValueError:
        log.debug("SSE data line is not JSON, passing through: %r", payload[:200])
        return line

    if not _override_cache_key(obj, prompt_cache_key):
        return line
    return "data: " + dumps_compact(obj)


class SSECacheKeyRewriter:
    """Incremental line rewriter for an SSE byte stream.

    Chunks may split lines (and UTF-8 sequences) anywhere. Only the text after
    the last newline is kept between chunks; every complete line is emitted
    as soon as its terminator arrives.
    """

    def __init__(self, prompt_cache_key: Optional[str]) -> None:
        self._prompt_cache_key = prompt_cache_key
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer: str = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> bytes:
        """Consume a chunk and return the bytes of every line it completed."""
        self._buffer += self._decoder.decode(chunk)
        parts = self._buffer.split("\n")
        self._buffer = parts.pop()

        out: List[str] = []
        for line in parts:
            line_ending = ""
            if line.endswith("\r"):
                line_ending = "\r"
                line = line[:-1]
            out.append(rewrite_sse_line(line, self._prompt_cache_key) + line_ending + "\n")
        return "".join(out).encode("utf-8")

    def flush(self) -> bytes:
        """Emit the unterminated tail, if any, without adding a line ending."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        if not tail:
            return b""
        return rewrite_sse_line(tail, self._prompt_cache_key).encode("utf-8")


async def rewrite_sse_stream(
    chunks: AsyncIterator[bytes],
    prompt_cache_key: Optional[str],
) -> AsyncGenerator[bytes, None]:
    """Pipe an SSE byte stream through SSECacheKeyRewriter."""
    rewriter = SSECacheKeyRewriter(prompt_cache_key)
    async for chunk in chunks:
        out = rewriter.feed(chunk)
        if out:
            yield out
    tail = rewriter.flush()
    if tail:
        yield tail
