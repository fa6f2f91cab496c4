from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence

import httpx

from cortex_chat.core.cancellation import CancelToken
from cortex_chat.core.errors import MemoryApiError
from cortex_chat.core.metrics import metrics
from cortex_chat.core.settings import Settings
from cortex_chat.core.sse import iter_sse_tokens
from cortex_chat.core.types import ContextMessage

logger = logging.getLogger(__name__)

NO_MODEL_CONFIGURED_MESSAGE = "No model API key configured. Set OPENAI_API_KEY or GROQ_API_KEY."


@dataclass
class ModelEndpoint:
    name: str
    api_key: str
    base_url: str
    model: str


def resolve_model_endpoint(settings: Settings) -> Optional[ModelEndpoint]:
    if settings.groq_api_key:
        return ModelEndpoint("groq", settings.groq_api_key, "https://api.groq.com/openai/v1", settings.groq_model)
    if settings.openai_api_key:
        return ModelEndpoint("openai", settings.openai_api_key, "https://api.openai.com/v1", settings.openai_model)
    return None


def build_demo_response(prompt: str) -> str:
    return (
        f'Here is a working draft answer for: "{prompt}".\n\n'
        "To keep things practical, the reply is split into small steps.\n\n"
        "1. Pin down the goal:\n"
        "- Describe the exact outcome you expect.\n"
        "- Decide how you will know it is done.\n"
        "- Note the deadline and any hard limits.\n\n"
        "2. Work in thin slices:\n"
        "- Ship the smallest version that proves the idea.\n"
        "- Add one improvement at a time.\n"
        "- Check each improvement before starting the next.\n\n"
        "3. Watch for the usual traps:\n"
        "- Building too much before anyone uses it.\n"
        "- Polishing visuals before the structure settles.\n"
        "- Leaving error handling and fallbacks for later.\n\n"
        "This is a canned demo reply used while the memory backend is offline. "
        "It is long enough to exercise streaming, wrapping and scrolling in the client."
    )


def chunk_text(text: str, chunk_chars: int) -> List[str]:
    words = text.split(" ")
    output: List[str] = []
    current = ""
    for word in words:
        if len(f"{current} {word}".strip()) > chunk_chars and current:
            output.append(f"{current} ")
            current = word
        else:
            current = f"{current} {word}".strip() if current else word
    if current:
        output.append(current)
    return output


def _last_user_prompt(messages: Sequence[ContextMessage]) -> str:
    for message in reversed(list(messages)):
        if message.role == "user" and message.content:
            return message.content
    return "your prompt"


class LlmProvider(ABC):
    """Streams assistant text straight from a model, bypassing the memory backend."""

    @abstractmethod
    def stream_chat(
        self,
        messages: Sequence[ContextMessage],
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        ...


class DefaultLlmProvider(LlmProvider):
    def __init__(self, settings: Settings, client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._client = client
        self.endpoint = resolve_model_endpoint(settings)

    async def stream_chat(
        self,
        messages: Sequence[ContextMessage],
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        token = cancel or CancelToken()
        if self._settings.demo_mode:
            metrics.inc("chat_llm_stream_total", {"provider": "demo"})
            for chunk in chunk_text(build_demo_response(_last_user_prompt(messages)), self._settings.demo_chunk_chars):
                token.raise_if_cancelled()
                if self._settings.demo_delay_ms > 0:
                    await asyncio.sleep(self._settings.demo_delay_ms / 1000.0)
                yield chunk
            return

        if self.endpoint is None:
            metrics.inc("chat_llm_stream_total", {"provider": "none"})
            yield NO_MODEL_CONFIGURED_MESSAGE
            return

        endpoint = self.endpoint
        metrics.inc("chat_llm_stream_total", {"provider": endpoint.name})
        request = self._client.build_request(
            "POST",
            f"{endpoint.base_url}/chat/completions",
            json={
                "model": endpoint.model,
                "messages": [message.to_payload() for message in messages],
                "stream": True,
                "temperature": 0.2,
            },
            headers={"content-type": "application/json", "authorization": f"Bearer {endpoint.api_key}"},
        )
        response = await token.run(self._client.send(request, stream=True))
        try:
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace")
                logger.warning("model endpoint %s failed status=%s", endpoint.name, response.status_code)
                raise MemoryApiError(
                    f"LLM request failed ({response.status_code}) {detail or 'Unknown error'}",
                    502,
                )
            tokens = iter_sse_tokens(response.aiter_bytes())
            while True:
                try:
                    fragment = await token.run(tokens.__anext__())
                except StopAsyncIteration:
                    break
                yield fragment
        finally:
            await response.aclose()
