"""
Process-wide connection registries.

- SessionRegistry: user_id -> live binding to a connection (channel name) and presence
- RoomManager: channel name -> the single room it has joined
- TaskRegistry: channel name -> background work owned by that connection

Each registry owns its map behind an asyncio.Lock and exposes only atomic
operations; callers never touch the underlying dicts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Coroutine, Dict, Optional, Set

from django.utils import timezone

logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE = "offline"


@dataclass(frozen=True)
class Session:
    """Binding between a user identity and a transport connection."""
    user_id: str
    channel_name: str
    user_type: Optional[str]
    presence: str
    last_seen: datetime

    @property
    def is_online(self) -> bool:
        return self.presence == ONLINE


def _user_key(user_id) -> str:
    # Clients and the backend disagree on int vs str ids
    return str(user_id)


class SessionRegistry:
    """user_id -> Session, at most one entry per user, last registration wins."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id, channel_name: str, user_type: Optional[str]) -> Session:
        """Bind user_id to channel_name and mark it online, replacing any previous binding."""
        session = Session(
            user_id=_user_key(user_id),
            channel_name=channel_name,
            user_type=user_type,
            presence=ONLINE,
            last_seen=timezone.now(),
        )
        async with self._lock:
            previous = self._sessions.get(session.user_id)
            self._sessions[session.user_id] = session

        if previous and previous.channel_name != channel_name:
            logger.info(
                "User %s re-registered: %s replaces %s",
                session.user_id, channel_name, previous.channel_name,
            )
        return session

    async def mark_offline(self, channel_name: str) -> Optional[Session]:
        """
        Flip the session owning channel_name to offline.

        The registry is keyed by user, so this is a reverse lookup. The handle is
        kept for audit. Returns the updated session, or None when no registered
        user owns the connection.
        """
        async with self._lock:
            for user_id, session in self._sessions.items():
                if session.channel_name == channel_name and session.is_online:
                    updated = replace(session, presence=OFFLINE, last_seen=timezone.now())
                    self._sessions[user_id] = updated
                    return updated
        return None

    async def lookup(self, user_id) -> Optional[Session]:
        async with self._lock:
            return self._sessions.get(_user_key(user_id))

    async def online_channel(self, user_id) -> Optional[str]:
        """Channel name of the user's connection if the user is currently online."""
        session = await self.lookup(user_id)
        if session and session.is_online:
            return session.channel_name
        return None

    async def counts(self) -> Dict[str, int]:
        async with self._lock:
            online = sum(1 for s in self._sessions.values() if s.is_online)
            return {"online": online, "offline": len(self._sessions) - online}


class RoomManager:
    """channel name -> room; a connection is in at most one room, join overwrites."""

    def __init__(self):
        self._rooms: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def join(self, channel_name: str, room: str) -> Optional[str]:
        """Assign channel_name to room. Returns the room it was previously in, if any."""
        async with self._lock:
            previous = self._rooms.get(channel_name)
            self._rooms[channel_name] = room
            return previous

    async def leave(self, channel_name: str, room: Optional[str] = None) -> Optional[str]:
        """
        Remove channel_name from its room.

        When room is given, only leave if it is the current room. Returns the room
        that was left, or None.
        """
        async with self._lock:
            current = self._rooms.get(channel_name)
            if current is None or (room is not None and room != current):
                return None
            del self._rooms[channel_name]
            return current

    async def room_of(self, channel_name: str) -> Optional[str]:
        async with self._lock:
            return self._rooms.get(channel_name)


class TaskRegistry:
    """
    Tracks asyncio tasks per owning connection.

    Tasks spawned with cancel_on_disconnect=True (e.g. the accept confirm-poll) are
    cancelled when their owner disconnects. Others run to completion, so work the
    backend should still see (forwards) is not lost when a client drops.
    """

    def __init__(self):
        self._tasks: Dict[str, Set[asyncio.Task]] = {}
        self._cancellable: Set[asyncio.Task] = set()

    def spawn(self, owner: str, coro: Coroutine[Any, Any, Any], cancel_on_disconnect: bool = False) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.setdefault(owner, set()).add(task)
        if cancel_on_disconnect:
            self._cancellable.add(task)
        task.add_done_callback(lambda t: self._forget(owner, t))
        return task

    def _forget(self, owner: str, task: asyncio.Task):
        self._cancellable.discard(task)
        tasks = self._tasks.get(owner)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._tasks.pop(owner, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task for %s failed", owner, exc_info=task.exception())

    def release(self, owner: str) -> int:
        """Cancel the owner's cancellable tasks. Returns how many were cancelled. Never blocks."""
        cancelled = 0
        for task in list(self._tasks.get(owner, ())):
            if task in self._cancellable and not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    def pending(self, owner: str) -> int:
        return len(self._tasks.get(owner, ()))

    async def drain(self, owner: str):
        """Wait until every task owned by owner (including ones they spawn) has finished."""
        while self._tasks.get(owner):
            await asyncio.gather(*list(self._tasks[owner]), return_exceptions=True)
            # Let done-callbacks run before re-checking
            await asyncio.sleep(0)


# ---------------------- Singletons ----------------------

_session_registry: Optional[SessionRegistry] = None
_room_manager: Optional[RoomManager] = None
_task_registry: Optional[TaskRegistry] = None


def get_session_registry() -> SessionRegistry:
    global _session_registry
    if _session_registry is None:
        _session_registry = SessionRegistry()
    return _session_registry


def get_room_manager() -> RoomManager:
    global _room_manager
    if _room_manager is None:
        _room_manager = RoomManager()
    return _room_manager


def get_task_registry() -> TaskRegistry:
    global _task_registry
    if _task_registry is None:
        _task_registry = TaskRegistry()
    return _task_registry
