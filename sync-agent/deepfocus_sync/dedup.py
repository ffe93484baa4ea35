from __future__ import annotations

import time


class ProcessedMessageSet:
    """
    Bounded record of message keys already applied in this process.

    Past `capacity` entries only the `keep` most recent keys survive.
    """

    def __init__(self, capacity: int = 100, keep: int = 50):
        if keep > capacity:
            raise ValueError("keep must not exceed capacity")
        self.capacity = capacity
        self.keep = keep
        # dict preserves insertion order; values unused
        self._keys: dict[str, None] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> bool:
        """Returns False if the key was already processed."""
        if key in self._keys:
            return False
        self._keys[key] = None
        if len(self._keys) > self.capacity:
            recent = list(self._keys)[-self.keep :]
            self._keys = dict.fromkeys(recent)
        return True


class Debouncer:
    """
    Collapses a repeat of the last accepted assertion inside a short window.

    A different assertion is always accepted, so the latest one wins.
    """

    def __init__(self, window_seconds: float = 0.5):
        self.window_seconds = window_seconds
        self._last_key: str | None = None
        self._last_ts: float | None = None

    def accept(self, key: str, now: float | None = None) -> bool:
        ts = now if now is not None else time.monotonic()
        if key == self._last_key and self._last_ts is not None and (ts - self._last_ts) < self.window_seconds:
            return False
        self._last_key = key
        self._last_ts = ts
        return True
