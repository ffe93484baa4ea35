from __future__ import annotations


class DeepFocusError(Exception):
    """Base class for deep focus synchronization errors."""


class RemoteWriteFailure(DeepFocusError):
    """A remote session log write failed on every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"{operation} failed after {attempts} attempt(s){detail}")
