from __future__ import annotations
import itertools
import threading


class InstanceCounter:
    """Monotonic source of QueueClient ids, starting at 0."""

    def __init__(self, start: int = 0) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)


# Created once when this module is first imported; shared by every client
# that is not given its own counter.
_DEFAULT_COUNTER = InstanceCounter()


def default_counter() -> InstanceCounter:
    """Process-wide counter used when none is injected"""
    return _DEFAULT_COUNTER
