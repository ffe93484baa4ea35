from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .models import FocusStateSnapshot

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "deep-focus-storage"


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


def ensure_dir(path: str) -> Path:
    p = Path(path).expanduser()
    p.mkdir(parents=True, exist_ok=True)
    return p


class FileStorage:
    """One file per key under the state dir (shared by every agent on this machine)."""

    def __init__(self, state_dir: str):
        self.state_dir = state_dir

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return ensure_dir(self.state_dir) / f"{safe}.json"

    def get(self, key: str) -> str | None:
        p = self._path(key)
        if not p.exists():
            return None
        return p.read_text()

    def set(self, key: str, value: str) -> None:
        p = self._path(key)
        # Write-then-rename so a concurrent reader never sees a half-written file
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(value)
        tmp.replace(p)


class MemoryStorage:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class PersistenceMirror:
    """
    Best-effort mirror of the focus state in local storage.

    Never raises: quota/IO/parse failures are logged and degrade to "no snapshot".
    """

    def __init__(self, storage: KeyValueStorage, key: str = DEFAULT_STORAGE_KEY):
        self.storage = storage
        self.key = key

    def save(self, snapshot: FocusStateSnapshot) -> bool:
        if snapshot.savedAt is None:
            snapshot = snapshot.model_copy(update={"savedAt": time.time()})
        try:
            self.storage.set(self.key, snapshot.model_dump_json())
            return True
        except Exception as e:
            logger.warning("Failed to persist focus snapshot under %r: %s", self.key, e)
            return False

    def load(self) -> FocusStateSnapshot | None:
        return self.load_validated()[0]

    def load_validated(self) -> tuple[FocusStateSnapshot | None, bool]:
        """
        Returns (snapshot, corrupted).

        `corrupted` is True only when something is stored but cannot be parsed.
        A parsed snapshot that claims active without a session (the flag was
        asserted before any session was bound) is returned as is; callers check
        `is_consistent()`.
        """
        try:
            raw = self.storage.get(self.key)
        except Exception as e:
            logger.warning("Failed to read focus snapshot under %r: %s", self.key, e)
            return None, False
        if not raw:
            return None, False
        try:
            snapshot = FocusStateSnapshot.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Discarding unreadable focus snapshot under %r: %s", self.key, e)
            return None, True
        if not snapshot.is_consistent():
            logger.info(
                "Focus snapshot is active without a session (id=%r, start=%r)",
                snapshot.activeSessionId,
                snapshot.activeSessionStartTime,
            )
        return snapshot, False
