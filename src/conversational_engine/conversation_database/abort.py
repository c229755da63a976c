"""
Stop-generating flags.

A client asks to stop a running turn by touching the conversation's entry in
the 'AbortRegistry'. The running orchestrator reads the entry between provider
tokens and stops when the recorded timestamp is newer than the moment the turn
started, so a stale request for an earlier turn never interrupts a new one.
Entries expire after 'ttl_seconds'.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable


class AbortRegistry(ABC):
    """Conversation-keyed cancellation timestamps (epoch seconds, sub-second precision)."""

    @abstractmethod
    async def touch(self, conversation_id: str) -> None:
        """Record a stop request for 'conversation_id' now. Last write wins."""
        pass

    @abstractmethod
    async def read(self, conversation_id: str) -> float | None:
        """Timestamp of the latest unexpired stop request, if any."""
        pass


class InMemoryAbortRegistry(AbortRegistry):
    """
    Process-local registry.

    Guarded by a 'threading.Lock' so it may be shared between event loops
    running in different threads of the same process.
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()

    async def touch(self, conversation_id: str) -> None:
        with self._lock:
            self._entries[conversation_id] = (time.time(), self._clock() + self.ttl_seconds)
            self._purge_expired()

    async def read(self, conversation_id: str) -> float | None:
        with self._lock:
            entry = self._entries.get(conversation_id)
            if entry is None:
                return None
            timestamp, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[conversation_id]
                return None
            return timestamp

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
