from __future__ import annotations

import logging
from threading import Lock
from typing import Callable, Dict, List, Optional

from cortex_chat.client.models import ChatMessage

logger = logging.getLogger(__name__)

Messages = List[ChatMessage]
Updater = Callable[[Messages], Messages]
Listener = Callable[[Optional[str], Messages], None]


class ThreadSessionCache:
    """Per-thread message lists plus the list currently rendered for the active thread.

    Writes always land on the owning thread's entry. They reach ``rendered`` only
    when the owning thread is the active one at write time, so a stream for a
    thread the user has switched away from keeps filling its own entry without
    leaking into the view.
    """

    def __init__(self) -> None:
        self._store: Dict[str, Messages] = {}
        self._active_thread_id: Optional[str] = None
        self._rendered: Messages = []
        self._listeners: List[Listener] = []
        self._lock = Lock()

    @property
    def active_thread_id(self) -> Optional[str]:
        return self._active_thread_id

    @property
    def rendered(self) -> Messages:
        with self._lock:
            return list(self._rendered)

    def has(self, thread_id: str) -> bool:
        with self._lock:
            return thread_id in self._store

    def get(self, thread_id: str) -> Messages:
        with self._lock:
            return list(self._store.get(thread_id, []))

    def set(self, thread_id: str, messages: Messages) -> None:
        snapshot = list(messages)
        with self._lock:
            self._store[thread_id] = snapshot
            mirrored = thread_id == self._active_thread_id
            if mirrored:
                self._rendered = list(snapshot)
        if mirrored:
            self._notify(thread_id, snapshot)

    def update(self, thread_id: str, updater: Updater) -> Messages:
        with self._lock:
            updated = list(updater(list(self._store.get(thread_id, []))))
            self._store[thread_id] = updated
            mirrored = thread_id == self._active_thread_id
            if mirrored:
                self._rendered = list(updated)
        if mirrored:
            self._notify(thread_id, updated)
        return list(updated)

    def delete(self, thread_id: str) -> None:
        with self._lock:
            self._store.pop(thread_id, None)

    def select(self, thread_id: Optional[str], messages: Optional[Messages] = None) -> None:
        """Make ``thread_id`` active and render ``messages`` (or its cached entry)."""
        with self._lock:
            self._active_thread_id = thread_id
            if messages is not None and thread_id is not None:
                self._store[thread_id] = list(messages)
            if thread_id is None:
                self._rendered = []
            else:
                self._rendered = list(self._store.get(thread_id, []))
            rendered = list(self._rendered)
        self._notify(thread_id, rendered)

    def snapshot(self) -> Dict[str, Messages]:
        with self._lock:
            return {thread_id: list(messages) for thread_id, messages in self._store.items()}

    def restore(self, store: Dict[str, Messages], active_thread_id: Optional[str]) -> None:
        with self._lock:
            self._store = {thread_id: list(messages) for thread_id, messages in store.items()}
        self.select(active_thread_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, thread_id: Optional[str], messages: Messages) -> None:
        for listener in list(self._listeners):
            try:
                listener(thread_id, list(messages))
            except Exception:
                logger.exception("session cache listener failed thread=%s", thread_id)
