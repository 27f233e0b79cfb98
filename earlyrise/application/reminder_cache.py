"""
TTL cache for "already reminded today" de-duplication.

Process-local и сбрасывается при рестарте: это лишь слой поверх
маркеров в ledger, а не их замена. Экземпляр создаётся приложением и
передаётся в пайплайн чек-инов явно.
"""
import threading
import time
from typing import Callable


class ReminderCache:
    """Keys are (user_id, local_date, kind); entries expire after ttl_seconds."""

    def __init__(
        self,
        ttl_seconds: float = 36 * 3600,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[int, str, str], float] = {}

    def _purge(self, now: float) -> None:
        expired = [key for key, exp in self._entries.items() if exp <= now]
        for key in expired:
            del self._entries[key]

    def seen(self, user_id: int, local_date: str, kind: str = "voice_reminder") -> bool:
        now = self._clock()
        with self._lock:
            exp = self._entries.get((user_id, local_date, kind))
            return exp is not None and exp > now

    def _mark_locked(self, key: tuple[int, str, str], now: float) -> None:
        if len(self._entries) >= self._max_entries:
            self._purge(now)
            # Still full: drop the entries closest to expiry
            while len(self._entries) >= self._max_entries:
                oldest = min(self._entries, key=self._entries.get)
                del self._entries[oldest]
        self._entries[key] = now + self._ttl

    def mark(self, user_id: int, local_date: str, kind: str = "voice_reminder") -> None:
        now = self._clock()
        with self._lock:
            self._mark_locked((user_id, local_date, kind), now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
