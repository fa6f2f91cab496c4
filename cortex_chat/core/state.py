import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from cortex_chat.core.agent import AgentClient
from cortex_chat.core.limiter import RateLimiter
from cortex_chat.core.llm import DefaultLlmProvider, LlmProvider
from cortex_chat.core.memory import CortexHttpProvider, MemoryProvider
from cortex_chat.core.memory_sql import CortexSqlProvider
from cortex_chat.core.router import BackendRouter
from cortex_chat.core.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    client: httpx.AsyncClient
    memory: MemoryProvider
    llm: LlmProvider
    agent: Optional[AgentClient]
    router: BackendRouter
    limiter: RateLimiter
    owns_client: bool = True

    async def aclose(self) -> None:
        if self.owns_client:
            await self.client.aclose()


def build_memory_provider(settings: Settings, client: httpx.AsyncClient) -> MemoryProvider:
    if settings.memory_backend == "sql":
        return CortexSqlProvider(settings)
    if settings.memory_backend != "http":
        raise ValueError(f"Unsupported memory backend: {settings.memory_backend}")
    return CortexHttpProvider(settings, client)


def build_services(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> ServiceContainer:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(settings.memory_timeout_ms / 1000.0))
    memory = build_memory_provider(settings, client)
    llm = DefaultLlmProvider(settings, client)
    agent = AgentClient(settings, client) if settings.agent_routing_enabled else None
    router = BackendRouter(settings, memory, agent=agent, llm=llm)
    limiter = RateLimiter(settings.rate_limit_rpm)
    logger.info(
        "services ready memory=%s agent=%s demo=%s model=%s",
        settings.memory_backend,
        "on" if agent else "off",
        settings.demo_mode,
        llm.endpoint.name if llm.endpoint else "none",
    )
    return ServiceContainer(
        settings=settings,
        client=client,
        memory=memory,
        llm=llm,
        agent=agent,
        router=router,
        limiter=limiter,
        owns_client=owns_client,
    )
