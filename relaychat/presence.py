"""
Presence registry: which realtime sessions belong to which user, and
which sessions have a chat screen open.

A user may be connected from several devices at once. The registry is
the only owner of that mapping; callers get copies, never the sets.
"""

import logging
import threading
from typing import Dict, FrozenSet, Optional, Set

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """
    Two groupings of session ids:

    - user groups: every session registered for a user. Message, status
      and chat-list events go here.
    - chat rooms: sessions that joined a chat screen. Only ephemeral
      events such as typing indicators go here.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._user_sessions: Dict[int, Set[str]] = {}
        self._session_user: Dict[str, int] = {}
        self._room_sessions: Dict[int, Set[str]] = {}
        self._session_rooms: Dict[str, Set[int]] = {}

    def register(self, session_id: str, user_id: int) -> None:
        """Attach a session to a user. Registering again is a no-op."""
        with self._lock:
            previous = self._session_user.get(session_id)
            if previous is not None and previous != user_id:
                self._drop_from_user(session_id, previous)
            self._session_user[session_id] = user_id
            self._user_sessions.setdefault(user_id, set()).add(session_id)
            count = len(self._user_sessions[user_id])
        logger.info(f"Session {session_id} registered for user {user_id} ({count} active)")

    def unregister(self, session_id: str) -> Optional[int]:
        """
        Forget a session and any chat rooms it joined. Safe for sessions
        that never registered.

        Returns:
            The user the session belonged to, if any
        """
        with self._lock:
            for chat_id in self._session_rooms.pop(session_id, set()):
                self._discard_from_room(session_id, chat_id)
            user_id = self._session_user.pop(session_id, None)
            if user_id is not None:
                self._drop_from_user(session_id, user_id)
                remaining = len(self._user_sessions.get(user_id, ()))
            else:
                remaining = 0

        if user_id is None:
            logger.debug(f"Session {session_id} closed before registering")
        elif remaining == 0:
            logger.info(f"User {user_id} fully disconnected")
        else:
            logger.info(f"User {user_id} disconnected one device ({remaining} remaining)")
        return user_id

    def join_chat_room(self, session_id: str, chat_id: int) -> bool:
        """
        Add a registered session to a chat room.

        Returns:
            False for sessions that have not registered
        """
        with self._lock:
            if session_id not in self._session_user:
                return False
            self._room_sessions.setdefault(chat_id, set()).add(session_id)
            self._session_rooms.setdefault(session_id, set()).add(chat_id)
        return True

    def leave_chat_room(self, session_id: str, chat_id: int) -> None:
        """Leave a chat room. The session stays in its user group."""
        with self._lock:
            rooms = self._session_rooms.get(session_id)
            if rooms is not None:
                rooms.discard(chat_id)
                if not rooms:
                    del self._session_rooms[session_id]
            self._discard_from_room(session_id, chat_id)

    def sessions_for_user(self, user_id: int) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._user_sessions.get(user_id, ()))

    def sessions_in_room(self, chat_id: int) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._room_sessions.get(chat_id, ()))

    def user_for_session(self, session_id: str) -> Optional[int]:
        with self._lock:
            return self._session_user.get(session_id)

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._user_sessions

    def session_count(self) -> int:
        with self._lock:
            return len(self._session_user)

    # Callers hold self._lock

    def _drop_from_user(self, session_id: str, user_id: int) -> None:
        sessions = self._user_sessions.get(user_id)
        if sessions is None:
            return
        sessions.discard(session_id)
        if not sessions:
            del self._user_sessions[user_id]

    def _discard_from_room(self, session_id: str, chat_id: int) -> None:
        sessions = self._room_sessions.get(chat_id)
        if sessions is None:
            return
        sessions.discard(session_id)
        if not sessions:
            del self._room_sessions[chat_id]
