from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class ConcurrencyGuard:
    """Per-configuration admission lock: at most one run per config id.

    Process-local; a second process against the same metadata store does not
    see it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: set[str] = set()

    def try_acquire(self, config_id: str) -> bool:
        with self._lock:
            if config_id in self._running:
                return False
            self._running.add(config_id)
            return True

    def release(self, config_id: str) -> None:
        with self._lock:
            self._running.discard(config_id)

    def is_running(self, config_id: str) -> bool:
        with self._lock:
            return config_id in self._running

    def running(self) -> list[str]:
        with self._lock:
            return sorted(self._running)

    @contextmanager
    def held(self, config_id: str) -> Iterator[bool]:
        """Yield whether admission succeeded; releases on exit only if it did."""
        acquired = self.try_acquire(config_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(config_id)
