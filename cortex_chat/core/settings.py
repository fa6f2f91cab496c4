import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _split_origins(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    memory_base_url: str
    memory_api_key: str
    memory_backend: str
    memory_timeout_ms: int
    agent_enabled: bool
    agent_base_url: str
    agent_timeout_ms: int
    demo_mode: bool
    demo_chunk_chars: int
    demo_delay_ms: int
    max_message_chars: int
    max_title_chars: int
    rate_limit_rpm: int
    auth_mode: str
    groq_api_key: str
    groq_model: str
    openai_api_key: str
    openai_model: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout_ms: int
    cors_origins: list[str]

    @property
    def agent_routing_enabled(self) -> bool:
        return self.agent_enabled and bool(self.agent_base_url)


def load_settings() -> Settings:
    auth_mode = os.getenv("AUTH_MODE", "dev").strip().lower()
    if auth_mode not in {"dev", "bearer"}:
        auth_mode = "dev"
    return Settings(
        memory_base_url=os.getenv("CORTEX_API_BASE_URL", "http://127.0.0.1:8000").rstrip("/"),
        memory_api_key=os.getenv("CORTEX_API_KEY", "").strip(),
        memory_backend=os.getenv("CORTEX_MEMORY_BACKEND", "http").strip().lower() or "http",
        memory_timeout_ms=max(100, int(os.getenv("CORTEX_TIMEOUT_MS", "30000"))),
        agent_enabled=_env_bool("CORTEX_AGENT_ENABLED", "true"),
        agent_base_url=os.getenv("CORTEX_AGENT_BASE_URL", "").strip().rstrip("/"),
        agent_timeout_ms=max(100, int(os.getenv("CORTEX_AGENT_TIMEOUT_MS", "30000"))),
        # demo mode stays on unless explicitly disabled
        demo_mode=os.getenv("CHAT_DEMO_MODE", "true").strip().lower() != "false",
        demo_chunk_chars=max(1, int(os.getenv("CHAT_DEMO_CHUNK_CHARS", "26"))),
        demo_delay_ms=max(0, int(os.getenv("CHAT_DEMO_DELAY_MS", "14"))),
        max_message_chars=max(1, int(os.getenv("CHAT_MAX_MESSAGE_CHARS", "6000"))),
        max_title_chars=max(1, int(os.getenv("CHAT_MAX_TITLE_CHARS", "120"))),
        rate_limit_rpm=max(0, int(os.getenv("CHAT_RATE_LIMIT_RPM", "0"))),
        auth_mode=auth_mode,
        groq_api_key=os.getenv("GROQ_API_KEY", "").strip(),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile").strip(),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip(),
        db_host=os.getenv("CORTEX_DB_HOST", "127.0.0.1").strip(),
        db_port=max(1, int(os.getenv("CORTEX_DB_PORT", "3306"))),
        db_name=os.getenv("CORTEX_DB_NAME", "cortex").strip(),
        db_user=os.getenv("CORTEX_DB_USER", "cortex").strip(),
        db_password=os.getenv("CORTEX_DB_PASSWORD", "cortex"),
        db_connect_timeout_ms=max(50, int(os.getenv("CORTEX_DB_CONNECT_TIMEOUT_MS", "2000"))),
        cors_origins=_split_origins(os.getenv("CORS_ALLOW_ORIGINS", "")),
    )
