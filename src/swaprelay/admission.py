from __future__ import annotations

import threading

# Any ceiling <= 0 disables the limit; this is the canonical spelling.
UNBOUNDED = 0


class AdmissionError(RuntimeError):
    """Raised when a slot is released that was never admitted."""


class AdmissionController:
    """Counts active relayed connections against a ceiling.

    ``try_admit`` and ``release`` are the only mutators and both run under one
    lock, so the count can't drift under concurrent accepts and completions.
    With an unbounded ceiling every request is admitted and the count is kept
    for logging only.
    """

    def __init__(self, limit: int = UNBOUNDED) -> None:
        self._lock = threading.Lock()
        self._limit = limit
        self._active = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def unbounded(self) -> bool:
        return self._limit <= 0

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def try_admit(self) -> bool:
        with self._lock:
            if self._limit > 0 and self._active >= self._limit:
                return False
            self._active += 1
            return True

    def release(self) -> int:
        """Free one slot and return the number still active."""
        with self._lock:
            if self._active == 0:
                raise AdmissionError("release() called with no active connections")
            self._active -= 1
            return self._active
