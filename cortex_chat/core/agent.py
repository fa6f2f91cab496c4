from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import quote

import httpx

from cortex_chat.core.cancellation import CancelToken
from cortex_chat.core.settings import Settings


class AgentClient:
    """Opens tool-augmented chat requests against the agent tier.

    Status handling is left to the caller, which decides between fallback and
    terminal failure.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._client = client
        self.base_url = settings.agent_base_url
        self._timeout = settings.agent_timeout_ms / 1000.0

    def _headers(self, authorization: Optional[str]) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._settings.memory_api_key:
            headers["x-api-key"] = self._settings.memory_api_key
        if authorization:
            headers["authorization"] = authorization
        return headers

    def chat_url(self, thread_id: str) -> str:
        return f"{self.base_url}/v1/agent/threads/{quote(thread_id, safe='')}/chat"

    async def open_chat(
        self,
        thread_id: str,
        text: str,
        cancel: CancelToken,
        authorization: Optional[str] = None,
    ) -> httpx.Response:
        request = self._client.build_request(
            "POST",
            self.chat_url(thread_id),
            json={"text": text},
            headers=self._headers(authorization),
            timeout=self._timeout,
        )
        return await cancel.run(self._client.send(request, stream=True))
