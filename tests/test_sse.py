import asyncio

from cortex_chat.core.sse import extract_delta_text, iter_sse_payloads, iter_sse_tokens


async def _chunks(items):
    for item in items:
        yield item


def _collect(items):
    async def _run():
        return [token async for token in iter_sse_tokens(_chunks(items))]

    return asyncio.run(_run())


def test_decoder_yields_delta_fragments_and_skips_done():
    tokens = _collect(
        [
            b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":" there"}}]}\n\n',
            b"data: [DONE]\n\n",
        ]
    )

    assert tokens == ["Hi", " there"]
    assert "".join(tokens) == "Hi there"


def test_decoder_reassembles_lines_split_across_chunks():
    raw = b'data: {"choices":[{"delta":{"content":"split"}}]}\n\ndata: {"choices":[{"delta":{"content":" line"}}]}\n'
    pieces = [raw[:7], raw[7:30], raw[30:61], raw[61:]]

    assert _collect(pieces) == ["split", " line"]


def test_decoder_keeps_multibyte_characters_split_between_chunks():
    encoded = 'data: {"choices":[{"delta":{"content":"café ☕"}}]}\n'.encode("utf-8")
    cut = encoded.index(b"\xc3") + 1

    assert _collect([encoded[:cut], encoded[cut:]]) == ["café ☕"]


def test_decoder_skips_malformed_and_fieldless_records():
    tokens = _collect(
        [
            b"event: ping\n",
            b"data: {not json}\n",
            b'data: {"choices":[]}\n',
            b'data: {"choices":[{"delta":{}}]}\n',
            b"data:   \n",
            b": keep-alive comment\n",
            b'data: {"choices":[{"delta":{"content":"ok"}}]}\n',
        ]
    )

    assert tokens == ["ok"]


def test_decoder_flushes_trailing_line_without_newline():
    tokens = _collect([b'data: {"choices":[{"delta":{"content":"tail"}}]}'])

    assert tokens == ["tail"]


def test_decoder_accepts_text_chunks_and_crlf_lines():
    tokens = _collect(['data: {"choices":[{"delta":{"content":"a"}}]}\r\n', 'data: {"choices":[{"text":"b"}]}\r\n'])

    assert tokens == ["a", "b"]


def test_payload_iterator_drops_blank_and_sentinel_payloads():
    async def _run():
        return [payload async for payload in iter_sse_payloads(_chunks([b"data: \n", b"data: [DONE]\n", b"data: x\n"]))]

    assert asyncio.run(_run()) == ["x"]


def test_extract_delta_text_prefers_delta_then_text():
    assert extract_delta_text({"choices": [{"delta": {"content": "d"}, "text": "t"}]}) == "d"
    assert extract_delta_text({"choices": [{"delta": {}, "text": "t"}]}) == "t"
    assert extract_delta_text({"choices": [{"delta": {"content": ""}}]}) is None
    assert extract_delta_text(["not", "a", "dict"]) is None
