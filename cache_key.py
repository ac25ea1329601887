"""prompt_cache_key normalization for inbound responses requests."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional, Tuple

from logger import LOGGER_NAME
from session import SessionResolution, first_non_empty

log = logging.getLogger(LOGGER_NAME)

CACHE_KEY_FIELD = "prompt_cache_key"
CACHE_KEY_HEADER_ALIASES = ("x-prompt-cache-key", "prompt_cache_key")
CACHE_KEY_QUERY_PARAM = "prompt_cache_key"


@dataclass(frozen=True)
class CacheKeyDecision:
    """Whether the caller declared a cache key, and the value to force into the response."""

    declared: bool = False
    value: Optional[str] = None


@dataclass(frozen=True)
class PreparedBody:
    """Request body as it will be forwarded upstream."""

    content: bytes
    original_text: str
    processed_text: str
    session: SessionResolution
    cache_key: CacheKeyDecision
    parsed: bool = False
    changed: bool = False
    # Parsed JSON objects, kept for the request body log line.
    original_obj: Any = None
    processed_obj: Any = None


def dumps_compact(obj: Any) -> str:
    """
    Compact JSON that always encodes to UTF-8.

    Lone surrogates (valid as "\\ud83d" escapes in JSON) cannot be written as
    raw UTF-8, so such documents are emitted with \\u escapes instead.
    """
    text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return json.dumps(obj, ensure_ascii=True, separators=(",", ":"))
    return text


def declared_cache_key(headers: Mapping[str, str], query: Mapping[str, str]) -> CacheKeyDecision:
    """Cache key declared out-of-band through headers or the query string."""
    value = first_non_empty(
        *(headers.get(name) for name in CACHE_KEY_HEADER_ALIASES),
        query.get(CACHE_KEY_QUERY_PARAM),
    )
    if value:
        return CacheKeyDecision(declared=True, value=value)
    return CacheKeyDecision()


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def normalize_request_body(body: Any, decision: CacheKeyDecision) -> Tuple[bool, CacheKeyDecision]:
    """
    Normalize ``prompt_cache_key`` of a parsed request body in place.

    Missing, null or blank keys become null. A key present in the body always
    arms the response override, with the body's value (null when blank). A
    missing key leaves a header/query declaration untouched.

    Returns: (changed, decision)
    """
    if not isinstance(body, dict):
        return False, decision

    has_key = CACHE_KEY_FIELD in body
    value = body.get(CACHE_KEY_FIELD)

    if has_key:
        decision = replace(decision, declared=True)

    if _is_blank(value):
        body[CACHE_KEY_FIELD] = None
        if has_key:
            decision = replace(decision, value=None)
        return True, decision

    return False, replace(decision, value=value)


def prepare_request_body(
    raw: bytes,
    content_type: str,
    headers: Mapping[str, str],
    query: Mapping[str, str],
    session: SessionResolution,
) -> PreparedBody:
    """
    Run the session correction and the cache key normalization over a raw body.

    Only ``application/json`` bodies are parsed. Anything that fails to parse is
    forwarded byte-for-byte.
    """
    original_text = raw.decode("utf-8", errors="replace")
    decision = declared_cache_key(headers, query)

    if "application/json" not in (content_type or "").lower():
        return PreparedBody(
            content=raw,
            original_text=original_text,
            processed_text=original_text,
            session=session,
            cache_key=decision,
        )

    try:
        body = json.loads(original_text)
    except ValueError as e:
        log.debug("Request body is not valid JSON, forwarding as-is: %s", e)
        return PreparedBody(
            content=raw,
            original_text=original_text,
            processed_text=original_text,
            session=session,
            cache_key=decision,
        )

    session = session.corrected(body)
    original_obj = copy.deepcopy(body) if isinstance(body, dict) else None
    changed, decision = normalize_request_body(body, decision)
    processed_obj = body if isinstance(body, dict) else None
    if not changed:
        return PreparedBody(
            content=raw,
            original_text=original_text,
            processed_text=original_text,
            session=session,
            cache_key=decision,
            parsed=True,
            original_obj=original_obj,
            processed_obj=processed_obj,
        )

    processed_text = dumps_compact(body)
    return PreparedBody(
        content=processed_text.encode("utf-8"),
        original_text=original_text,
        processed_text=processed_text,
        session=session,
        cache_key=decision,
        parsed=True,
        changed=True,
        original_obj=original_obj,
        processed_obj=processed_obj,
    )
