"""Sticky session identifier resolution.

The session id is what the upstream routing layer hashes to keep every turn of
one conversation on the same backend. It is resolved per request, with no
server-side table:

  1) request headers: x-session-id / conversation_id / session_id
  2) query parameter: session_id
  3) cookie (SESSION_COOKIE_NAME, "rc_session" by default)
  4) random uuid4

Once the JSON body is parsed, a provisional id that did not come from a header
or the query string is replaced by the id derived from ``input[1].id``
("<conversation>:<turn>" -> "<conversation>"). A cookie does not block that
correction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Any, Mapping, MutableMapping
from urllib.parse import unquote

# Same logical value, written under every name upstream routers look at.
SESSION_HEADER_ALIASES = ("x-session-id", "conversation_id", "session_id")
SESSION_QUERY_PARAM = "session_id"


def first_non_empty(*values: Any) -> str:
    """Return the first value that is a non-blank string, stripped; "" if none."""
    for v in values:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def parse_cookie(header: str) -> dict[str, str]:
    """Parse a Cookie header: "a=b; c=d" -> {"a": "b", "c": "d"}."""
    out: dict[str, str] = {}
    for part in (header or "").split(";"):
        name, sep, value = part.partition("=")
        if not sep:
            continue
        name = name.strip()
        if not name:
            continue
        out[name] = unquote(value.strip())
    return out


def explicit_session_id(headers: Mapping[str, str], query: Mapping[str, str]) -> str:
    """Session id supplied by the caller through headers or the query string."""
    return first_non_empty(
        *(headers.get(name) for name in SESSION_HEADER_ALIASES)
    ) or first_non_empty(query.get(SESSION_QUERY_PARAM))


def derive_session_id_from_body(body: Any) -> str:
    """
    Derive a stable id from ``input[1].id`` of a responses request body.

    Returns the part before the first ":" or "" when nothing can be derived.
    """
    if not isinstance(body, dict):
        return ""
    items = body.get("input")
    if not isinstance(items, list) or len(items) < 2:
        return ""
    second = items[1]
    if not isinstance(second, dict):
        return ""
    item_id = second.get("id")
    if not isinstance(item_id, str):
        return ""
    item_id = item_id.strip()
    idx = item_id.find(":")
    if idx <= 0:
        return ""
    return item_id[:idx]


@dataclass(frozen=True)
class SessionResolution:
    """Session id in two stages: guessed before the body is read, final after."""

    provisional: str
    final: str
    explicit: str
    source: str

    def corrected(self, body: Any) -> SessionResolution:
        """Apply the body-derived id unless the caller supplied one explicitly."""
        if self.explicit:
            return self
        derived = derive_session_id_from_body(body)
        if not derived or derived == self.final:
            return self
        return replace(self, final=derived, source="body")


def resolve_provisional(
    headers: Mapping[str, str],
    query: Mapping[str, str],
    cookie_name: str,
) -> SessionResolution:
    """Resolve the session id from everything available before the body."""
    explicit = explicit_session_id(headers, query)
    if explicit:
        from_header = first_non_empty(*(headers.get(name) for name in SESSION_HEADER_ALIASES))
        source = "header" if from_header else "query"
        return SessionResolution(provisional=explicit, final=explicit, explicit=explicit, source=source)

    from_cookie = first_non_empty(parse_cookie(headers.get("cookie") or "").get(cookie_name))
    if from_cookie:
        return SessionResolution(provisional=from_cookie, final=from_cookie, explicit="", source="cookie")

    generated = str(uuid.uuid4())
    return SessionResolution(provisional=generated, final=generated, explicit="", source="generated")


def inject_session_headers(headers: MutableMapping[str, str], session_id: str) -> None:
    """Write the session id under every routing header alias."""
    for name in SESSION_HEADER_ALIASES:
        headers[name] = session_id
