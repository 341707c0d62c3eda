"""
Counter sink used to report diagnostics.

The core only calls `increment(name, delta)` and `note_result(name, value)`;
formatting and persistence belong to whoever consumes the sink.
`ExperimentStats` is the in-memory implementation used by the driver and
tests. Counter names are dotted paths (e.g. "instances.correct").
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import Protocol


class CounterSink(Protocol):
    def increment(self, name: str, delta: float = 1) -> None: ...

    def note_result(self, name: str, value: float, desc: str | None = None) -> None: ...


class ExperimentStats:
    """Thread-safe in-memory counters and named results."""

    def __init__(self):
        self._counters: Counter[str] = Counter()
        self.results: dict[str, float] = {}
        self.descriptions: dict[str, str] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, delta: float = 1) -> None:
        with self._lock:
            self._counters[name] += delta

    def note_result(self, name: str, value: float, desc: str | None = None) -> None:
        with self._lock:
            self.results[name] = value
            if desc is not None:
                self.descriptions[name] = desc

    def get(self, name: str) -> float:
        return self._counters.get(name, 0)

    def list_counters(self, prefix: str = "", recursive: bool = True) -> list[str]:
        """
        Counter names under `prefix`.

        With `recursive=False` only names exactly one level below the prefix
        are returned.
        """
        base = prefix + "." if prefix else ""
        names = []
        for name in sorted(self._counters):
            if not name.startswith(base):
                continue
            if not recursive and "." in name[len(base):]:
                continue
            names.append(name)
        return names

    def as_dict(self) -> dict[str, float]:
        with self._lock:
            return dict(self._counters)


__all__ = ["CounterSink", "ExperimentStats"]
