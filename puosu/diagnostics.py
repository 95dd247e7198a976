from collections import deque
from typing import Any

from puosu.helpers import isoformat, utcnow


class DiagnosticsBuffer:
    """Bounded in-memory log of outbound calls; the oldest entries drop off first."""

    def __init__(self, capacity: int = 200):
        self._entries: deque = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def record(self, **entry: Any) -> dict:
        entry.setdefault("timestamp", isoformat(utcnow()))
        self._entries.append(entry)
        return entry

    def snapshot(self) -> list[dict]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
