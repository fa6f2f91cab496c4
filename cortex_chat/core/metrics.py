from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Mapping


class MetricRegistry:
    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def set(self, name: str, labels: Mapping[str, str] | None = None, value: float = 0.0) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            self._gauges[key] = float(value)

    @contextmanager
    def timed(self, name: str, labels: Mapping[str, str] | None = None) -> Iterator[None]:
        """Record elapsed milliseconds of the block as a gauge."""
        started = time.perf_counter()
        try:
            yield
        finally:
            took_ms = (time.perf_counter() - started) * 1000.0
            self.set(name, labels, value=max(0.0, took_ms))

    def get(self, name: str, labels: Mapping[str, str] | None = None) -> float | int:
        key = self._format_key(name, labels)
        with self._lock:
            if key in self._gauges:
                return self._gauges[key]
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, float | int]:
        with self._lock:
            merged: dict[str, float | int] = dict(self._counters)
            merged.update(self._gauges)
            return merged

    @staticmethod
    def _format_key(name: str, labels: Mapping[str, str] | None) -> str:
        if not labels:
            return name
        parts = [f"{k}={labels[k]}" for k in sorted(labels.keys())]
        return f"{name}{{{','.join(parts)}}}"


metrics = MetricRegistry()
