import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from oauth_bridge.services.sessions.transport import SessionContext, Transport


@dataclass
class ActiveTransport:
    transport: Transport
    context: SessionContext
    last_accessed_at: float = field(default_factory=time.monotonic)

    @property
    def user_id(self) -> str:
        return self.context.user_id

    @property
    def session_id(self) -> str:
        return self.context.session_id


class ActiveTransportRegistry:
    """
    In-memory map of session id -> live transport.

    Shared by request handlers and the background reaper/sweeper; every
    access goes through one lock.
    """

    def __init__(self):
        self._entries: Dict[str, ActiveTransport] = {}
        self._lock = asyncio.Lock()

    async def put(self, entry: ActiveTransport) -> int:
        async with self._lock:
            self._entries[entry.session_id] = entry
            return len(self._entries)

    async def touch(self, session_id: str) -> Optional[ActiveTransport]:
        """Return the entry and record the access, or None if not live."""
        async with self._lock:
            entry = self._entries.get(session_id)
            if entry is not None:
                entry.last_accessed_at = time.monotonic()
            return entry

    async def get(self, session_id: str) -> Optional[ActiveTransport]:
        async with self._lock:
            return self._entries.get(session_id)

    async def pop(self, session_id: str) -> Optional[ActiveTransport]:
        async with self._lock:
            return self._entries.pop(session_id, None)

    async def pop_idle(self, max_idle_seconds: float) -> List[ActiveTransport]:
        now = time.monotonic()
        async with self._lock:
            idle = [
                session_id
                for session_id, entry in self._entries.items()
                if now - entry.last_accessed_at > max_idle_seconds
            ]
            return [self._entries.pop(session_id) for session_id in idle]

    async def pop_all(self) -> List[ActiveTransport]:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            return entries

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)
