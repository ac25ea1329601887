"""
Tests for SSE (Server-Sent Events) handler module.

Tests cover:
- Single-line rewrite rules
- Incremental rewriting across arbitrary chunk boundaries
- Flush of an unterminated tail
"""

import json

import pytest

from sse_handler import (
    SSECacheKeyRewriter,
    is_done_data_line,
    rewrite_sse_line,
    rewrite_sse_stream,
)


async def _aiter(chunks):
    for c in chunks:
        yield c


async def _collect(agen):
    return [c async for c in agen]


# ============================================================================
# Line Rewrite Tests
# ============================================================================

class TestRewriteSSELine:
    """Test the single-line rewrite rule."""

    def test_is_done_data_line(self):
        assert is_done_data_line("data:[DONE]") is True
        assert is_done_data_line("data:   [DONE]") is True
        assert is_done_data_line("data: [DONE] extra") is False
        assert is_done_data_line("event: [DONE]") is False

    def test_response_envelope_gets_key(self):
        line = 'data: {"type":"response.created","response":{"id":"r1","prompt_cache_key":null}}'
        out = rewrite_sse_line(line, "k2")
        assert out.startswith("data: {")
        obj = json.loads(out[len("data: "):])
        assert obj["response"]["prompt_cache_key"] == "k2"
        assert obj["type"] == "response.created"

    def test_response_envelope_key_inserted_when_missing(self):
        out = rewrite_sse_line('data:{"response":{"id":"r1"}}', "k2")
        assert out == 'data: {"response":{"id":"r1","prompt_cache_key":"k2"}}'

    def test_top_level_key_overwritten(self):
        out = rewrite_sse_line('data: {"prompt_cache_key":"up","x":1}', "k2")
        assert out == 'data: {"prompt_cache_key":"k2","x":1}'

    def test_envelope_preferred_over_top_level(self):
        out = rewrite_sse_line('data: {"prompt_cache_key":"up","response":{}}', "k2")
        assert json.loads(out[6:]) == {"prompt_cache_key": "up", "response": {"prompt_cache_key": "k2"}}

    def test_null_override(self):
        out = rewrite_sse_line('data: {"response":{"prompt_cache_key":"up"}}', None)
        assert out == 'data: {"response":{"prompt_cache_key":null}}'

    @pytest.mark.parametrize(
        "line",
        [
            "data: [DONE]",
            "data:",
            "data:    ",
            "event: response.completed",
            ": keepalive",
            "",
            "data: {not json",
            'data: {"type":"response.output_text.delta","delta":"hi"}',
            'data: ["prompt_cache_key"]',
            'data: {"response":["not","object"]}',
            'data: "plain string"',
        ],
    )
    def test_untouched_lines(self, line):
        assert rewrite_sse_line(line, "k2") == line


# ============================================================================
# Incremental Rewriter Tests
# ============================================================================

class TestSSECacheKeyRewriter:
    """Test carry-over buffering across chunks."""

    LINE = b'data: {"response":{"prompt_cache_key":null}}\n'
    EXPECTED = b'data: {"response":{"prompt_cache_key":"k2"}}\n'

    def test_line_split_at_every_offset(self, sse_chunks):
        for offset in range(1, len(self.LINE)):
            rw = SSECacheKeyRewriter("k2")
            first, second = sse_chunks(self.LINE, offset)
            out = rw.feed(first)
            assert out == b""
            out += rw.feed(second)
            out += rw.flush()
            assert out == self.EXPECTED

    def test_only_tail_is_retained(self):
        rw = SSECacheKeyRewriter("k2")
        out = rw.feed(b"event: response.created\ndata: {\"resp")
        assert out == b"event: response.created\n"
        assert rw.pending == 'data: {"resp'

    def test_crlf_preserved(self):
        rw = SSECacheKeyRewriter("k2")
        out = rw.feed(b'event: x\r\ndata: {"prompt_cache_key":"a"}\r\n\r\n')
        assert out == b'event: x\r\ndata: {"prompt_cache_key":"k2"}\r\n\r\n'

    def test_multibyte_character_split(self):
        data = 'data: {"response":{"text":"привет"}}\n'.encode("utf-8")
        cut = data.index("и".encode("utf-8")) + 1
        rw = SSECacheKeyRewriter("k2")
        out = rw.feed(data[:cut]) + rw.feed(data[cut:]) + rw.flush()
        assert json.loads(out.decode("utf-8")[6:]) == {
            "response": {"text": "привет", "prompt_cache_key": "k2"}
        }

    def test_lone_surrogate_escape_survives(self):
        rw = SSECacheKeyRewriter("k2")
        out = rw.feed(b'data: {"response":{"text":"\\ud83d"}}\n') + rw.flush()
        assert out.endswith(b"\n")
        assert json.loads(out.decode("utf-8")[6:]) == {
            "response": {"text": "\ud83d", "prompt_cache_key": "k2"}
        }

    def test_flush_emits_unterminated_tail_without_newline(self):
        rw = SSECacheKeyRewriter("k2")
        assert rw.feed(b'data: {"prompt_cache_key":1}') == b""
        assert rw.flush() == b'data: {"prompt_cache_key":"k2"}'
        assert rw.flush() == b""

    def test_done_is_byte_identical(self):
        rw = SSECacheKeyRewriter("k2")
        data = b"data: [DONE]\n\n"
        assert rw.feed(data) + rw.flush() == data


class TestRewriteSSEStream:
    """Test the async generator wrapper."""

    @pytest.mark.asyncio
    async def test_stream_reconstructs_events(self, sse_chunks):
        events = (
            b"event: response.created\n"
            b'data: {"type":"response.created","response":{"prompt_cache_key":null}}\n\n'
            b"event: response.output_text.delta\n"
            b'data: {"type":"response.output_text.delta","delta":"Hi"}\n\n'
            b"data: [DONE]\n\n"
        )
        chunks = sse_chunks(events, 7, 30, 31, 90, 140)
        out = b"".join(await _collect(rewrite_sse_stream(_aiter(chunks), "k2")))
        expected = events.replace(
            b'"response":{"prompt_cache_key":null}', b'"response":{"prompt_cache_key":"k2"}'
        )
        assert out == expected

    @pytest.mark.asyncio
    async def test_stream_yields_per_completed_line(self):
        chunks = [b"data: [DO", b"NE]\n", b"tail"]
        out = await _collect(rewrite_sse_stream(_aiter(chunks), "k2"))
        assert out == [b"data: [DONE]\n", b"tail"]

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        assert await _collect(rewrite_sse_stream(_aiter([]), "k2")) == []
