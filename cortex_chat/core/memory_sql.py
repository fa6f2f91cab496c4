from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from functools import partial
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, TypeVar

import pymysql
import pymysql.cursors

from cortex_chat.core.errors import MemoryApiError
from cortex_chat.core.memory import MemoryCapability, MemoryProvider
from cortex_chat.core.metrics import metrics
from cortex_chat.core.settings import Settings
from cortex_chat.core.types import ContextMessage, EventRecord, ThreadRecord, normalize_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SUMMARY_CUE_RE = re.compile(r"\b(recap|summari[sz]e|catch me up|where were we|continue)\b", flags=re.IGNORECASE)
_SEMANTIC_CUE_RE = re.compile(
    r"\b(remember|what did i say|what was the plan|who am i|my name)\b",
    flags=re.IGNORECASE,
)

# Tried in order; older deployments only carry some of these tables.
_SUMMARY_QUERIES = (
    """
    SELECT summary FROM ltm_thread_summaries
    WHERE thread_id=%s AND is_active=1
    ORDER BY updated_at DESC LIMIT 1
    """,
    """
    SELECT summary FROM ltm_thread_summaries
    WHERE thread_id=%s
    ORDER BY created_at DESC LIMIT 1
    """,
)
_SEMANTIC_QUERIES = (
    """
    SELECT content FROM ltm_memories
    WHERE thread_id=%s
    ORDER BY created_at DESC LIMIT %s
    """,
    """
    SELECT content FROM ltm_events
    WHERE thread_id=%s AND embedding IS NOT NULL
    ORDER BY created_at DESC LIMIT %s
    """,
)


def _parse_meta(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, dict):
        return value or None
    if isinstance(value, (str, bytes)) and value:
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        if isinstance(parsed, dict) and parsed:
            return parsed
    return None


class CortexSqlProvider(MemoryProvider):
    """Talks to the memory tables directly. Has no chat endpoint of its own."""

    capabilities = frozenset({MemoryCapability.LIST_THREADS, MemoryCapability.SUMMARY})

    def __init__(self, settings: Settings, connect: Optional[Callable[[], Any]] = None) -> None:
        self._settings = settings
        self._connect_fn = connect or self._connect
        self._lock = Lock()

    def _connect(self):
        timeout = max(0.05, self._settings.db_connect_timeout_ms / 1000.0)
        return pymysql.connect(
            host=self._settings.db_host,
            port=self._settings.db_port,
            user=self._settings.db_user,
            password=self._settings.db_password,
            database=self._settings.db_name,
            charset="utf8mb4",
            autocommit=True,
            cursorclass=pymysql.cursors.DictCursor,
            connect_timeout=timeout,
            read_timeout=timeout,
            write_timeout=timeout,
        )

    def _with_cursor(self, operation: str, work: Callable[[Any], T]) -> T:
        try:
            with self._lock:
                connection = self._connect_fn()
                try:
                    with connection.cursor() as cursor:
                        result = work(cursor)
                finally:
                    connection.close()
        except pymysql.MySQLError as exc:
            metrics.inc("memory_sql_query_total", {"operation": operation, "result": "error"})
            logger.warning("memory sql %s failed: %s", operation, exc)
            raise MemoryApiError(f"Memory database is unavailable: {exc}", 503) from exc
        metrics.inc("memory_sql_query_total", {"operation": operation, "result": "ok"})
        return result

    async def _run(self, operation: str, work: Callable[[Any], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._with_cursor, operation, work))

    async def start_thread(self, user_id: str, title: Optional[str] = None) -> str:
        thread_id = str(uuid.uuid4())

        def work(cursor) -> None:
            cursor.execute(
                "INSERT INTO ltm_threads (id, user_id, title) VALUES (%s, %s, %s)",
                (thread_id, user_id, title),
            )

        await self._run("start_thread", work)
        return thread_id

    async def list_threads(self, user_id: str, limit: int = 50) -> List[ThreadRecord]:
        def work(cursor) -> List[Dict[str, Any]]:
            cursor.execute(
                """
                SELECT id, user_id, title, created_at
                FROM ltm_threads
                WHERE user_id=%s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            return list(cursor.fetchall() or [])

        rows = await self._run("list_threads", work)
        return [
            ThreadRecord(
                id=str(row.get("id")),
                user_id=str(row.get("user_id") or user_id),
                title=row.get("title"),
                created_at=normalize_timestamp(row.get("created_at")),
            )
            for row in rows
        ]

    async def add_event(self, thread_id: str, role: str, content: str, meta: Optional[Dict[str, Any]] = None) -> str:
        event_id = str(uuid.uuid4())

        def work(cursor) -> None:
            cursor.execute(
                "INSERT INTO ltm_events (id, thread_id, actor, content, meta) VALUES (%s, %s, %s, %s, %s)",
                (event_id, thread_id, role, content, json.dumps(meta or {}, ensure_ascii=False)),
            )

        await self._run("add_event", work)
        return event_id

    async def get_recent_events(self, thread_id: str, limit: int = 30) -> List[EventRecord]:
        def work(cursor) -> List[Dict[str, Any]]:
            cursor.execute(
                """
                SELECT id, thread_id, actor, content, meta, created_at
                FROM ltm_events
                WHERE thread_id=%s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (thread_id, limit),
            )
            return list(cursor.fetchall() or [])

        rows = await self._run("get_recent_events", work)
        events: List[EventRecord] = []
        for row in reversed(rows):
            if row.get("actor") not in {"user", "assistant"}:
                continue
            events.append(
                EventRecord(
                    id=str(row.get("id")),
                    thread_id=str(row.get("thread_id") or thread_id),
                    role=row["actor"],
                    content=str(row.get("content") or ""),
                    created_at=normalize_timestamp(row.get("created_at")),
                    meta=_parse_meta(row.get("meta")),
                )
            )
        return events

    def _first_rows(self, cursor, queries, params) -> List[Dict[str, Any]]:
        for sql in queries:
            try:
                cursor.execute(sql, params)
            except pymysql.err.ProgrammingError as exc:
                logger.debug("memory sql fallback query skipped: %s", exc)
                continue
            rows = list(cursor.fetchall() or [])
            if rows:
                return rows
        return []

    async def get_active_summary(self, thread_id: str) -> Optional[str]:
        rows = await self._run("get_active_summary", lambda cursor: self._first_rows(cursor, _SUMMARY_QUERIES, (thread_id,)))
        for row in rows:
            summary = row.get("summary")
            if isinstance(summary, str) and summary.strip():
                return summary.strip()
        return None

    async def _semantic_memories(self, thread_id: str, limit: int) -> List[str]:
        rows = await self._run(
            "semantic_memories",
            lambda cursor: self._first_rows(cursor, _SEMANTIC_QUERIES, (thread_id, limit)),
        )
        values = [row.get("content") for row in rows]
        return [value.strip() for value in values if isinstance(value, str) and value.strip()]

    async def build_memory_context(
        self, thread_id: str, latest_user_text: str, short_term_limit: int = 30
    ) -> List[ContextMessage]:
        context: List[ContextMessage] = []
        if _SUMMARY_CUE_RE.search(latest_user_text):
            summary = await self.get_active_summary(thread_id)
            if summary:
                context.append(ContextMessage("system", f"Active summary:\n{summary}"))
        if _SEMANTIC_CUE_RE.search(latest_user_text):
            memories = await self._semantic_memories(thread_id, 5)
            if memories:
                joined = "\n".join(f"- {item}" for item in memories)
                context.append(ContextMessage("system", f"Relevant long-term memory:\n{joined}"))
        for event in await self.get_recent_events(thread_id, short_term_limit):
            context.append(ContextMessage(event.role, event.content))
        return context
