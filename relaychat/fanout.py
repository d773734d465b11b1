"""
Fan-out router: delivers domain events to live realtime sessions.

Delivery is best-effort. A session that is gone, or whose socket fails,
just misses the event; clients re-fetch state after reconnecting.
Within one session events arrive in emission order; nothing is promised
across sessions or event types.
"""

import logging
from typing import Dict, Iterable, Optional, Protocol

from fastapi import WebSocket
from pydantic import BaseModel

from relaychat.metrics import record_realtime_event
from relaychat.presence import PresenceRegistry

logger = logging.getLogger(__name__)


EVENT_NEW_MESSAGE = "new_message"
EVENT_CHAT_LIST_UPDATE = "chat_list_update"
EVENT_MESSAGE_STATUS_UPDATE = "message_status_update"
EVENT_MESSAGE_DELETED = "message_deleted"
EVENT_USER_TYPING = "user_typing"


class Transport(Protocol):
    async def send(self, session_id: str, event: str, payload: dict) -> bool:
        ...


class WebSocketHub:
    """Transport over FastAPI WebSockets, one socket per session id."""

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}

    def attach(self, session_id: str, websocket: WebSocket) -> None:
        self._sockets[session_id] = websocket

    def detach(self, session_id: str) -> None:
        self._sockets.pop(session_id, None)

    async def send(self, session_id: str, event: str, payload: dict) -> bool:
        websocket = self._sockets.get(session_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json({"event": event, "data": payload})
            return True
        except Exception as e:
            # The receive loop of that session cleans up on disconnect
            logger.warning(f"Realtime send failed: session={session_id}, event={event}, error={e}")
            return False


def _as_payload(payload) -> dict:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True)
    return payload


class FanoutRouter:
    """Resolves event targets through the presence registry."""

    def __init__(self, presence: PresenceRegistry, transport: Transport):
        self.presence = presence
        self.transport = transport

    async def emit_to_session(self, session_id: str, event: str, payload) -> bool:
        delivered = await self.transport.send(session_id, event, _as_payload(payload))
        if delivered:
            record_realtime_event(event)
        return delivered

    async def emit_to_user(self, user_id: int, event: str, payload) -> int:
        """
        Send to every session of a user.

        Returns:
            Number of sessions the event reached
        """
        data = _as_payload(payload)
        delivered = 0
        for session_id in sorted(self.presence.sessions_for_user(user_id)):
            if await self.transport.send(session_id, event, data):
                delivered += 1
        record_realtime_event(event, delivered)
        return delivered

    async def emit_to_users(self, user_ids: Iterable[int], event: str, payload) -> int:
        data = _as_payload(payload)
        total = 0
        for user_id in user_ids:
            total += await self.emit_to_user(user_id, event, data)
        return total

    async def emit_to_room(self, chat_id: int, event: str, payload,
                           skip_session: Optional[str] = None) -> int:
        data = _as_payload(payload)
        delivered = 0
        for session_id in sorted(self.presence.sessions_in_room(chat_id)):
            if session_id == skip_session:
                continue
            if await self.transport.send(session_id, event, data):
                delivered += 1
        record_realtime_event(event, delivered)
        return delivered

    # Domain events

    async def new_message(self, recipient_id: int, payload) -> int:
        return await self.emit_to_user(recipient_id, EVENT_NEW_MESSAGE, payload)

    async def chat_list_update(self, user_id: int, payload) -> int:
        return await self.emit_to_user(user_id, EVENT_CHAT_LIST_UPDATE, payload)

    async def message_status_update(self, sender_id: int, payload) -> int:
        return await self.emit_to_user(sender_id, EVENT_MESSAGE_STATUS_UPDATE, payload)

    async def message_deleted(self, member_ids: Iterable[int], payload) -> int:
        return await self.emit_to_users(member_ids, EVENT_MESSAGE_DELETED, payload)

    async def user_typing(self, chat_id: int, origin_session: str, payload) -> int:
        return await self.emit_to_room(chat_id, EVENT_USER_TYPING, payload, skip_session=origin_session)
