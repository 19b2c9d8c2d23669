"""Per-lobby write locks."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
import threading


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class LobbyLocks:
    """Hands out one re-entrant lock per lobby id.

    Operations on different lobbies never contend; every mutation of one
    lobby (membership, ready flags, votes and round transitions) runs while
    holding that lobby's lock. An entry lives only while some thread holds
    or waits for it, so finished lobbies leave nothing behind.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _LockEntry] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, lobby_id: str) -> Iterator[None]:
        """Acquire one lobby write lock."""
        with self._guard:
            entry = self._locks.setdefault(lobby_id, _LockEntry())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0 and self._locks.get(lobby_id) is entry:
                    del self._locks[lobby_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
