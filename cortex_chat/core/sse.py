from __future__ import annotations

import codecs
import json
from typing import AsyncIterable, AsyncIterator, Optional

DONE_SENTINEL = "[DONE]"


def _payload_from_line(line: str) -> Optional[str]:
    trimmed = line.strip()
    if not trimmed.startswith("data:"):
        return None
    payload = trimmed[len("data:"):].strip()
    if not payload or payload == DONE_SENTINEL:
        return None
    return payload


def extract_delta_text(event: object) -> Optional[str]:
    if not isinstance(event, dict):
        return None
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    content = None
    delta = choice.get("delta")
    if isinstance(delta, dict):
        content = delta.get("content")
    if content is None:
        content = choice.get("text")
    if isinstance(content, str) and content:
        return content
    return None


async def iter_sse_payloads(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
    """Yield raw ``data:`` payloads from an event stream, skipping blanks and the sentinel."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        if isinstance(chunk, bytes):
            buffer += decoder.decode(chunk)
        else:
            buffer += chunk
        lines = buffer.split("\n")
        buffer = lines.pop()
        for line in lines:
            payload = _payload_from_line(line)
            if payload is not None:
                yield payload
    buffer += decoder.decode(b"", final=True)
    if buffer:
        payload = _payload_from_line(buffer)
        if payload is not None:
            yield payload


async def iter_sse_tokens(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
    """Decode an OpenAI-style delta stream into plain text fragments.

    Lines that are not ``data:`` records, unparseable JSON and records without a
    text delta are skipped; they never abort the decode.
    """
    async for payload in iter_sse_payloads(chunks):
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            continue
        token = extract_delta_text(event)
        if token:
            yield token
