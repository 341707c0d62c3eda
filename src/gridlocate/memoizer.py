"""
Memoization of vocabulary tokens to dense integer ids.

Language models store and compare grams by integer id rather than by string.
The table is append-only: an id, once assigned to a token, never changes and
is never reused.
"""

from __future__ import annotations

import threading


class Memoizer:
    """
    Bijective token <-> int table.

    Args:
        minimum_index: Smallest id handed out. Can be raised to reserve some
            ids for other purposes.
    """

    def __init__(self, minimum_index: int = 0):
        self.minimum_index = minimum_index
        self._next_index = minimum_index
        self._value_to_id: dict[str, int] = {}
        self._id_to_value: list[str] = []
        self._lock = threading.Lock()

    @property
    def number_of_entries(self) -> int:
        return self._next_index - self.minimum_index

    def __len__(self) -> int:
        return self.number_of_entries

    def __contains__(self, value: str) -> bool:
        return value in self._value_to_id

    def memoize(self, value: str) -> int:
        index = self._value_to_id.get(value)
        if index is not None:
            return index
        with self._lock:
            # Another thread may have assigned it while we waited.
            index = self._value_to_id.get(value)
            if index is None:
                index = self._next_index
                self._next_index += 1
                self._value_to_id[value] = index
                self._id_to_value.append(value)
            return index

    def lookup(self, value: str) -> int | None:
        """Id of `value` if already memoized, without assigning a new one."""
        return self._value_to_id.get(value)

    def unmemoize(self, index: int) -> str:
        offset = index - self.minimum_index
        if offset < 0 or offset >= len(self._id_to_value):
            raise KeyError(f"Unknown gram id {index}")
        return self._id_to_value[offset]


_DEFAULT_MEMOIZER = Memoizer()


def default_memoizer() -> Memoizer:
    """The process-wide memoizer shared by all language models."""
    return _DEFAULT_MEMOIZER


__all__ = ["Memoizer", "default_memoizer"]
