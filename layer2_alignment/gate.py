"""
Layer 2 — Capture Gate
Single shared boolean: may a still be captured right now?
"""
import threading
from typing import Tuple


class CaptureGate:
    """
    Lock-guarded boolean cell.

    Written by the frame-analysis thread, read by the trigger path and
    by UI reflection. Starts closed (False).
    """

    def __init__(self, initial: bool = False):
        self._lock = threading.Lock()
        self._value = bool(initial)
        self._version = 0

    def set(self, value: bool) -> bool:
        """Store value; returns True if it differed from the previous one."""
        value = bool(value)
        with self._lock:
            changed = value != self._value
            self._value = value
            self._version += 1
            return changed

    def get(self) -> bool:
        with self._lock:
            return self._value

    def snapshot(self) -> Tuple[bool, int]:
        """(value, number of writes so far), read atomically."""
        with self._lock:
            return self._value, self._version
