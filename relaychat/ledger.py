"""
Status ledger: per-(message, recipient) delivery state.

Every chat member has one message_status row per message. The sender
sees a single aggregated tick state computed from the recipients' rows;
everyone else sees their own row.

Aggregates are always recomputed from the table, never cached: a status
change can land between any two awaits of a caller.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from relaychat.models import (
    CHAT_SELF,
    STATUS_DELIVERED,
    STATUS_RANK,
    STATUS_READ,
    STATUS_SENT,
    Chat,
    Message,
    MessageHide,
    MessageStatus,
    utcnow,
)
from relaychat.storage import dialect_insert

logger = logging.getLogger(__name__)


def aggregate(recipient_statuses: Iterable[str]) -> str:
    """
    Collapse recipient statuses into the sender's tick state.

    - read: every recipient has read
    - delivered: at least one recipient is delivered or read
    - sent: otherwise, including when there are no recipients
    """
    statuses = list(recipient_statuses)
    if not statuses:
        return STATUS_SENT
    if all(s == STATUS_READ for s in statuses):
        return STATUS_READ
    if any(s in (STATUS_DELIVERED, STATUS_READ) for s in statuses):
        return STATUS_DELIVERED
    return STATUS_SENT


def is_downgrade(current: Optional[str], new: str) -> bool:
    return current is not None and STATUS_RANK[new] < STATUS_RANK[current]


def create_status(db: Session, message_id: int, user_id: int, status: str) -> None:
    """Insert-or-update the status row; applying the same status twice is a no-op."""
    now = utcnow()
    stmt = dialect_insert(db, MessageStatus).values(
        message_id=message_id, user_id=user_id, status=status, status_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["message_id", "user_id"],
        set_={"status": status, "status_at": now},
    )
    db.execute(stmt)
    db.commit()


def update_status(db: Session, message_id: int, user_id: int, status: str) -> bool:
    """
    Overwrite an existing status row. Monotonicity is the caller's job.

    Returns:
        False when no row exists for (message, user)
    """
    result = db.execute(
        update(MessageStatus)
        .where(MessageStatus.message_id == message_id, MessageStatus.user_id == user_id)
        .values(status=status, status_at=utcnow())
    )
    db.commit()
    return result.rowcount > 0


def get_status(db: Session, message_id: int, user_id: int) -> Optional[str]:
    return db.execute(
        select(MessageStatus.status).where(
            MessageStatus.message_id == message_id, MessageStatus.user_id == user_id
        )
    ).scalar_one_or_none()


def recipient_statuses(db: Session, message_id: int, sender_id: int) -> List[str]:
    return list(db.execute(
        select(MessageStatus.status).where(
            MessageStatus.message_id == message_id, MessageStatus.user_id != sender_id
        )
    ).scalars())


def aggregate_for_sender(db: Session, message) -> str:
    return aggregate(recipient_statuses(db, message.message_id, message.sender_id))


def status_for_viewer(db: Session, message, viewer_id: int, chat_type: Optional[str] = None) -> str:
    """
    Tick state of `message` as `viewer_id` should see it.

    Senders get the aggregate (always read in a self chat). Recipients get
    their own row, and delivered when the row is missing.
    """
    if message.sender_id == viewer_id:
        if chat_type is None:
            chat_type = db.execute(
                select(Chat.type).where(Chat.chat_id == message.chat_id)
            ).scalar_one_or_none()
        if chat_type == CHAT_SELF:
            return STATUS_READ
        return aggregate_for_sender(db, message)

    own = get_status(db, message.message_id, viewer_id)
    if own is None:
        logger.debug(f"No status row for message={message.message_id} user={viewer_id}, assuming delivered")
        return STATUS_DELIVERED
    return own


def mark_all_as_read(db: Session, chat_id: int, user_id: int) -> List[int]:
    """
    Mark every unread status row of `user_id` in the chat as read.
    The user's own messages are not touched.

    Returns:
        Ids of the messages that changed; empty when nothing was unread
    """
    message_ids = list(db.execute(
        select(MessageStatus.message_id)
        .join(Message, Message.message_id == MessageStatus.message_id)
        .where(
            Message.chat_id == chat_id,
            Message.sender_id != user_id,
            MessageStatus.user_id == user_id,
            MessageStatus.status != STATUS_READ,
        )
        .order_by(MessageStatus.message_id)
    ).scalars())

    if not message_ids:
        return []

    db.execute(
        update(MessageStatus)
        .where(MessageStatus.user_id == user_id, MessageStatus.message_id.in_(message_ids))
        .values(status=STATUS_READ, status_at=utcnow())
    )
    db.commit()
    logger.info(f"Marked {len(message_ids)} messages read: chat={chat_id}, user={user_id}")
    return message_ids


def unread_count(db: Session, chat_id: int, user_id: int) -> int:
    """Messages from others in the chat that `user_id` has neither read nor hidden."""
    hidden = select(MessageHide.message_id).where(MessageHide.user_id == user_id)
    count = db.execute(
        select(func.count(Message.message_id))
        .select_from(Message)
        .outerjoin(
            MessageStatus,
            and_(
                MessageStatus.message_id == Message.message_id,
                MessageStatus.user_id == user_id,
            ),
        )
        .where(
            Message.chat_id == chat_id,
            Message.sender_id != user_id,
            Message.message_id.not_in(hidden),
            (MessageStatus.status.is_(None)) | (MessageStatus.status != STATUS_READ),
        )
    ).scalar()
    return int(count or 0)
