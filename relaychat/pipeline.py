"""
Message pipeline: send, status change, read and delete flows.

Each flow validates and authorizes before touching storage, mutates the
status ledger, then fans out to live sessions. Sending splits in two: the
synchronous part persists and returns the message; `deliver` runs after
the response and is best-effort throughout. A failure after the message
row exists is logged, never rolled back.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relaychat import ledger, storage
from relaychat.cache import ResponseCache
from relaychat.errors import AccessDenied, NotFound, ValidationFailed
from relaychat.fanout import FanoutRouter
from relaychat.metrics import record_message_sent, record_push_outcome
from relaychat.models import (
    CHAT_GROUP,
    CHAT_SELF,
    STATUS_DELIVERED,
    STATUS_READ,
    STATUS_SENT,
)
from relaychat.schemas import (
    ChatListUpdateEvent,
    MessageDeletedEvent,
    MessageOut,
    MessageStatusUpdateEvent,
    NewMessageEvent,
    ReplyPreview,
    SendMessageRequest,
)
from relaychat.utils import as_data_uri, display_name, message_preview

logger = logging.getLogger(__name__)

DELETE_FOR_ME = "forMe"
DELETE_FOR_EVERYONE = "forEveryone"


@dataclass
class DeliveryJob:
    """Everything `deliver` needs, captured before the response is sent."""
    chat_id: int
    chat_type: str
    chat_title: Optional[str]
    sender_id: int
    sender_name: str
    recipient_ids: List[int]
    event: NewMessageEvent
    push_data: Dict[str, str] = field(default_factory=dict)


def _initial_status(chat_type: str, recipient_count: int) -> str:
    if chat_type == CHAT_SELF:
        return STATUS_READ
    if recipient_count > 0:
        return STATUS_DELIVERED
    return STATUS_SENT


def push_title(sender_name: str, chat_type: str, chat_title: Optional[str]) -> str:
    if chat_type == CHAT_GROUP:
        return f"{sender_name} in {chat_title or 'Group'}"
    return sender_name


class MessagePipeline:
    def __init__(self, router: FanoutRouter, push_gateway, object_store, cache: ResponseCache,
                 session_factory: Callable[[], Session]):
        self.router = router
        self.push = push_gateway
        self.objects = object_store
        self.cache = cache
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # Access checks
    # -------------------------------------------------------------------------

    def require_chat_member(self, db: Session, chat_id: int, user_id: int):
        chat = storage.get_chat(db, chat_id)
        if chat is None:
            raise NotFound("Chat not found")
        if not storage.is_member(db, chat_id, user_id):
            raise AccessDenied("Access denied")
        return chat

    def _member_message(self, db: Session, message_id: int, user_id: int):
        message = storage.get_message(db, message_id)
        if message is None:
            raise NotFound("Message not found")
        if not storage.is_member(db, message.chat_id, user_id):
            raise AccessDenied("Access denied")
        return message

    def _reply_preview(self, db: Session, chat_id: int, reply_to_id: Optional[int]) -> Optional[ReplyPreview]:
        """Preview of the replied-to message; None when it is gone or in another chat."""
        if reply_to_id is None:
            return None
        try:
            original = storage.get_message(db, reply_to_id)
            if original is None or original.chat_id != chat_id:
                logger.info(f"Reply target {reply_to_id} not in chat {chat_id}, dropping reply")
                return None
            author = storage.get_user_by_id(db, original.sender_id)
        except SQLAlchemyError as e:
            logger.warning(f"Reply preview lookup failed for message {reply_to_id}: {e}")
            return None
        return ReplyPreview(
            id=str(original.message_id),
            text=original.message_text,
            sender_name=display_name(author.username if author else None, author.email if author else None),
        )

    @staticmethod
    def _owns_loose_object(db: Session, file_path: str, user_id: int) -> bool:
        """True for `<folder>/<user_id>/...` paths that no document row points at."""
        parts = file_path.split("/")
        if len(parts) < 3 or parts[1] != str(user_id):
            return False
        return storage.get_document_by_path(db, file_path) is None

    # -------------------------------------------------------------------------
    # Send
    # -------------------------------------------------------------------------

    def send_message(self, db: Session, chat_id: int, sender_id: int,
                     req: SendMessageRequest) -> Tuple[MessageOut, DeliveryJob]:
        """
        Persist a message and initialize its status rows.

        Returns:
            The message as the sender sees it, and the job that fans it out

        Raises:
            ValidationFailed: no text, file or document
            NotFound: chat or cited document missing
            AccessDenied: sender is not a member, or cites a document they did not upload
        """
        if not (req.text or req.file_url or req.document_id):
            raise ValidationFailed("Message text, file, or documentId is required")

        chat = self.require_chat_member(db, chat_id, sender_id)

        file_url, file_path, file_name, file_size = req.file_url, req.file_path, req.file_name, req.file_size
        if req.document_id is not None:
            document = storage.get_document(db, req.document_id)
            if document is None:
                raise NotFound("Document not found")
            if document.user_id != sender_id:
                raise AccessDenied("Access denied")
            file_url = file_url or document.file_url
            file_path = file_path or document.file_path
            file_name = file_name or document.file_name
            file_size = file_size if file_size is not None else document.file_size
            storage.increment_reference_count(db, req.document_id)

        member_ids = storage.get_member_ids(db, chat_id)
        recipient_ids = [uid for uid in member_ids if uid != sender_id]
        reply = self._reply_preview(db, chat_id, req.reply_to_id)

        message = storage.create_message(
            db,
            chat_id=chat_id,
            sender_id=sender_id,
            text=req.text,
            message_type=req.type,
            file_url=file_url,
            file_path=file_path,
            file_name=file_name,
            file_size=file_size,
            document_id=req.document_id,
            reply_to=int(reply.id) if reply else None,
        )

        ledger.create_status(db, message.message_id, sender_id,
                             STATUS_READ if chat.type == CHAT_SELF else STATUS_SENT)
        for recipient_id in recipient_ids:
            ledger.create_status(db, message.message_id, recipient_id, STATUS_DELIVERED)

        record_message_sent(chat.type)
        self.cache.invalidate_chat_lists(member_ids)

        sender = storage.get_user_by_id(db, sender_id)
        sender_name = display_name(sender.username, sender.email, fallback="Someone")

        out = MessageOut(
            id=str(message.message_id),
            text=message.message_text,
            type=message.message_type,
            file_url=message.file_url,
            file_name=message.file_name,
            file_size=message.file_size,
            timestamp=message.created_at,
            is_sent=True,
            status=_initial_status(chat.type, len(recipient_ids)),
            sender_id=sender_id,
            sender_name=sender_name,
            sender_avatar=as_data_uri(sender.profile_photo),
            reply_to=reply,
        )
        job = DeliveryJob(
            chat_id=chat_id,
            chat_type=chat.type,
            chat_title=chat.title,
            sender_id=sender_id,
            sender_name=sender_name,
            recipient_ids=recipient_ids,
            event=NewMessageEvent(
                id=out.id,
                text=out.text,
                type=out.type,
                file_url=out.file_url,
                file_name=out.file_name,
                timestamp=out.timestamp,
                sender_id=sender_id,
                sender_name=sender_name,
                chat_id=str(chat_id),
                reply_to=reply,
            ),
            push_data={
                "chatId": str(chat_id),
                "messageId": out.id,
                "senderId": str(sender_id),
                "type": "new_message",
            },
        )
        return out, job

    async def deliver(self, job: DeliveryJob) -> None:
        """Fan a sent message out to live sessions and push devices."""
        event = job.event
        await self.router.chat_list_update(job.sender_id, ChatListUpdateEvent(
            chat_id=event.chat_id,
            last_message=event.text,
            last_message_time=event.timestamp,
            sender_name="You",
            unread_count=0,
        ))

        if not job.recipient_ids:
            return

        title = push_title(job.sender_name, job.chat_type, job.chat_title)
        body = message_preview(event.text)

        with self.session_factory() as db:
            for recipient_id in job.recipient_ids:
                try:
                    unread = ledger.unread_count(db, job.chat_id, recipient_id)
                    await self.router.new_message(recipient_id, event)
                    await self.router.chat_list_update(recipient_id, ChatListUpdateEvent(
                        chat_id=event.chat_id,
                        last_message=event.text,
                        last_message_time=event.timestamp,
                        sender_name=job.sender_name,
                        unread_count=unread,
                    ))
                except Exception as e:
                    logger.error(f"Realtime delivery to user {recipient_id} failed: {e}")

                try:
                    await self._push(db, recipient_id, title, body, job.push_data)
                except Exception as e:
                    logger.error(f"Push to user {recipient_id} failed: {e}")

    async def _push(self, db: Session, user_id: int, title: str, body: str, data: Dict[str, str]) -> None:
        tokens = storage.get_user_device_tokens(db, user_id)
        if not tokens:
            return
        report = await self.push.send_to_tokens(tokens, title, body, data)
        if report.success_count:
            record_push_outcome("sent", report.success_count)
        invalid = len(report.invalid_tokens)
        if report.failure_count - invalid > 0:
            record_push_outcome("failed", report.failure_count - invalid)
        if invalid:
            record_push_outcome("invalid_token", invalid)
            for token in report.invalid_tokens:
                storage.delete_device_token(db, token)
            logger.info(f"Pruned {invalid} invalid push token(s) of user {user_id}")

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    def list_messages(self, db: Session, chat_id: int, viewer_id: int,
                      limit: int = 50, offset: int = 0) -> List[MessageOut]:
        chat = self.require_chat_member(db, chat_id, viewer_id)
        messages = []
        for row in storage.get_chat_messages(db, chat_id, viewer_id, limit=limit, offset=offset):
            message = row.Message
            reply = None
            if message.reply_to is not None:
                reply = ReplyPreview(
                    id=str(message.reply_to),
                    text=row.reply_text,
                    sender_name=display_name(row.reply_sender_name, row.reply_sender_email),
                )
            messages.append(MessageOut(
                id=str(message.message_id),
                text=message.message_text,
                type=message.message_type,
                file_url=message.file_url,
                file_name=message.file_name,
                file_size=message.file_size,
                timestamp=message.created_at,
                is_sent=message.sender_id == viewer_id,
                status=ledger.status_for_viewer(db, message, viewer_id, chat.type),
                sender_id=message.sender_id,
                sender_name=display_name(row.sender_name, row.sender_email),
                sender_avatar=as_data_uri(row.sender_avatar),
                reply_to=reply,
            ))
        return messages

    # -------------------------------------------------------------------------
    # Status changes
    # -------------------------------------------------------------------------

    async def update_status(self, db: Session, message_id: int, user_id: int, status: str) -> bool:
        """
        Move one member's status forward and tell the sender.

        Returns:
            False when the request would downgrade the stored status (ignored)
        """
        message = self._member_message(db, message_id, user_id)

        current = ledger.get_status(db, message_id, user_id)
        if ledger.is_downgrade(current, status):
            logger.info(f"Ignoring status downgrade {current}->{status}: message={message_id}, user={user_id}")
            return False

        if current is None:
            ledger.create_status(db, message_id, user_id, status)
        elif current != status:
            ledger.update_status(db, message_id, user_id, status)

        if status == STATUS_READ:
            self.cache.invalidate_chat_lists([user_id])

        if message.sender_id != user_id:
            await self.router.message_status_update(message.sender_id, MessageStatusUpdateEvent(
                message_id=str(message_id),
                status=ledger.aggregate_for_sender(db, message),
                chat_id=str(message.chat_id),
            ))
        return True

    async def mark_chat_as_read(self, db: Session, chat_id: int, user_id: int) -> List[int]:
        """
        Read everything unread in a chat; senders get fresh aggregates and
        the reader's badge drops to zero.
        """
        self.require_chat_member(db, chat_id, user_id)

        message_ids = ledger.mark_all_as_read(db, chat_id, user_id)
        for message_id in message_ids:
            message = storage.get_message(db, message_id)
            if message is None:
                continue
            await self.router.message_status_update(message.sender_id, MessageStatusUpdateEvent(
                message_id=str(message_id),
                status=ledger.aggregate_for_sender(db, message),
                chat_id=str(chat_id),
            ))

        if message_ids:
            self.cache.invalidate_chat_lists(storage.get_member_ids(db, chat_id))
        await self._emit_cleared_badge(db, chat_id, user_id)
        return message_ids

    async def clear_unread(self, db: Session, chat_id: int, user_id: int) -> bool:
        """Zero the badge on every session of the user; no status changes."""
        return await self._emit_cleared_badge(db, chat_id, user_id)

    async def _emit_cleared_badge(self, db: Session, chat_id: int, user_id: int) -> bool:
        row = storage.get_user_chat(db, user_id, chat_id)
        if row is None:
            return False
        await self.router.chat_list_update(user_id, ChatListUpdateEvent(
            chat_id=str(chat_id),
            last_message=row["last_message"],
            last_message_time=row["last_message_time"],
            sender_name=row["other_user_name"] or "User",
            unread_count=0,
        ))
        return True

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete_message(self, db: Session, message_id: int, user_id: int,
                             delete_type: str = DELETE_FOR_ME) -> dict:
        message = self._member_message(db, message_id, user_id)
        chat_id = message.chat_id

        if delete_type != DELETE_FOR_EVERYONE:
            storage.hide_message(db, message_id, user_id)
            self.cache.invalidate_chat_lists([user_id])
            logger.info(f"Message hidden: message={message_id}, user={user_id}")
            return {"chat_id": chat_id, "delete_type": DELETE_FOR_ME}

        if message.sender_id != user_id:
            raise AccessDenied("Only the sender can delete a message for everyone")

        document_id, file_path = message.document_id, message.file_path
        if not storage.delete_message(db, message_id):
            raise NotFound("Message not found")

        if document_id is not None:
            remaining = storage.decrement_reference_count(db, document_id)
            logger.info(f"Document {document_id} now cited by {remaining} message(s)")
        elif file_path and self._owns_loose_object(db, file_path, user_id):
            await self.objects.delete(file_path)
        elif file_path:
            logger.info(f"Keeping object {file_path}: not a loose upload of user {user_id}")

        member_ids = storage.get_member_ids(db, chat_id)
        self.cache.invalidate_chat_lists(member_ids)
        await self.router.message_deleted(member_ids, MessageDeletedEvent(
            message_id=str(message_id),
            chat_id=str(chat_id),
            deleted_by=user_id,
        ))
        logger.info(f"Message deleted for everyone: message={message_id}, chat={chat_id}")
        return {"chat_id": chat_id, "delete_type": DELETE_FOR_EVERYONE}
