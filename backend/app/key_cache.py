"""In-memory cache of derived per-user keys.

Keys are held in process memory only and are never persisted. Entries are
dropped on sign-out (``clear``), on shutdown (``clear_all``) and, when an
idle timeout is configured, after that many minutes without access
(sliding window). Dropped keys are zeroed before release.

One ``KeyCache`` is created per process and passed to whatever needs it;
there is no module-level cache.
"""

from __future__ import annotations

import ctypes
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _secure_zero(buf: bytearray) -> None:
    """Overwrite a bytearray with zeros to remove key material from memory.

    Uses ctypes.memset for a C-level overwrite that the interpreter
    cannot optimize away.
    """
    n = len(buf)
    if n == 0:
        return
    ctypes.memset((ctypes.c_char * n).from_buffer(buf), 0, n)


@dataclass
class CacheEntry:
    key: bytearray
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class KeyCache:
    """Thread-safe map of ``(user_id, key_type)`` to derived key bytes."""

    def __init__(self, timeout_minutes: int | None = None) -> None:
        if timeout_minutes is not None and timeout_minutes < 0:
            raise ValueError(f"timeout_minutes must be >= 0, got {timeout_minutes}")
        self._timeout_minutes = timeout_minutes or None
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._miss_locks: dict[tuple[str, str], threading.Lock] = {}

    def _expired(self, entry: CacheEntry, now: datetime) -> bool:
        if self._timeout_minutes is None:
            return False
        return (now - entry.last_activity).total_seconds() > self._timeout_minutes * 60

    def get(self, user_id: str, key_type: str) -> bytes | None:
        """Return a copy of the cached key, or None if absent or expired."""
        slot = (user_id, key_type)
        with self._lock:
            entry = self._entries.get(slot)
            if entry is None:
                return None
            now = datetime.now(timezone.utc)
            if self._expired(entry, now):
                _secure_zero(entry.key)
                del self._entries[slot]
                return None
            entry.last_activity = now
            return bytes(entry.key)

    def put(self, user_id: str, key_type: str, key: bytes) -> None:
        with self._lock:
            old = self._entries.get((user_id, key_type))
            if old is not None:
                _secure_zero(old.key)
            self._entries[(user_id, key_type)] = CacheEntry(key=bytearray(key))

    def get_or_create(
        self, user_id: str, key_type: str, factory: Callable[[], bytes]
    ) -> bytes:
        """Return the cached key, deriving it with ``factory`` on a miss.

        Misses for the same slot are serialized so a key is derived (or
        fetched remotely) once; misses for different users run in parallel.
        Factory errors propagate and nothing is cached.
        """
        cached = self.get(user_id, key_type)
        if cached is not None:
            return cached

        slot = (user_id, key_type)
        with self._lock:
            miss_lock = self._miss_locks.setdefault(slot, threading.Lock())
        with miss_lock:
            cached = self.get(user_id, key_type)
            if cached is not None:
                return cached
            try:
                key = factory()
                self.put(user_id, key_type, key)
            finally:
                with self._lock:
                    # Waiters already hold a reference; later callers hit the cache.
                    if self._miss_locks.get(slot) is miss_lock:
                        del self._miss_locks[slot]
            return key

    def has(self, user_id: str) -> bool:
        """True if any key type is cached for ``user_id``."""
        with self._lock:
            return any(uid == user_id for uid, _ in self._entries)

    def clear(self, user_id: str) -> int:
        """Drop every cached key for one user. Returns the count dropped."""
        with self._lock:
            slots = [slot for slot in self._entries if slot[0] == user_id]
            for slot in slots:
                _secure_zero(self._entries.pop(slot).key)
                self._miss_locks.pop(slot, None)
        return len(slots)

    def clear_all(self) -> None:
        with self._lock:
            for entry in self._entries.values():
                _secure_zero(entry.key)
            self._entries.clear()
            self._miss_locks.clear()

    def sweep_expired(self) -> int:
        """Proactively wipe all idle entries. Returns the number wiped.

        Called periodically from the app lifespan so idle keys don't linger
        when nobody asks for them.
        """
        if self._timeout_minutes is None:
            return 0
        now = datetime.now(timezone.utc)
        with self._lock:
            expired = [slot for slot, entry in self._entries.items() if self._expired(entry, now)]
            for slot in expired:
                _secure_zero(self._entries.pop(slot).key)
                self._miss_locks.pop(slot, None)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
