"""Authoritative in-memory session state.

All mutations go through ``writing()``, an asyncio lock shared by the
notification consumer, the permission consumer and HTTP handlers.
Mutating code never awaits while holding the lock, so readers (which do
not take the lock) always observe a consistent store.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from acp_bridge.engine.errors import MessageNotFound, SessionNotFound
from acp_bridge.shared.models.message import Message, now_ms
from acp_bridge.shared.models.session import Session

logger = logging.getLogger(__name__)


class IdGenerator:
    """``<prefix>-<epoch ms>-<counter>`` ids, unique per process."""

    def __init__(self) -> None:
        self._counters: dict[str, itertools.count] = {}

    def next(self, prefix: str) -> str:
        counter = self._counters.setdefault(prefix, itertools.count(1))
        return f"{prefix}-{now_ms()}-{next(counter)}"


class SessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._ids = IdGenerator()

    @asynccontextmanager
    async def writing(self) -> AsyncIterator[SessionStore]:
        async with self._lock:
            yield self

    # ── ids ──

    def new_message_id(self) -> str:
        return self._ids.next("msg")

    def new_part_id(self) -> str:
        return self._ids.next("part")

    def new_permission_id(self) -> str:
        return self._ids.next("perm")

    # ── reads ──

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def require_message(self, session_id: str, message_id: str) -> Message:
        msg = self.require(session_id).get_message(message_id)
        if msg is None:
            raise MessageNotFound(session_id, message_id)
        return msg

    def list(self, directory: str | None = None) -> list[Session]:
        sessions = list(self._sessions.values())
        if directory is not None:
            sessions = [s for s in sessions if s.cwd == directory]
        return sessions

    # ── writes (caller holds writing()) ──

    def add(self, session: Session) -> Session:
        self._sessions[session.id] = session
        return session

    def remove(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    def remap(self, old_id: str, new_id: str) -> Session:
        """Move a session to the id the agent assigned it.

        After this returns, only *new_id* resolves; messages and parts are
        rebound to it.
        """
        session = self._sessions.pop(old_id, None)
        if session is None:
            raise SessionNotFound(old_id)
        session.rebind(new_id)
        self._sessions[new_id] = session
        logger.info("Remapped session %s -> %s", old_id, new_id)
        return session
