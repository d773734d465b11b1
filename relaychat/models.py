"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from relaychat.storage import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Tick states, in the order a recipient moves through them
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"
STATUS_RANK = {STATUS_SENT: 0, STATUS_DELIVERED: 1, STATUS_READ: 2}

CHAT_SELF = "self"
CHAT_PRIVATE = "private"
CHAT_GROUP = "group"

ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"

MESSAGE_TYPES = ("text", "image", "video", "audio", "document")


class User(Base):
    """
    Table: users
    Created by find-or-create on the first verified code; never hard-deleted.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False, unique=True, index=True)  # stored lower-cased
    username = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    profile_photo = Column(Text, nullable=True)  # base64 without data-URI prefix
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Chat(Base):
    """
    Table: chats
    type: self (one member), private (two members), group (one or more, with roles)
    """
    __tablename__ = "chats"

    chat_id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(10), nullable=False, index=True)
    title = Column(String(200), nullable=True)
    avatar = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ChatMember(Base):
    """Table: chat_members, composite key (chat_id, user_id)."""
    __tablename__ = "chat_members"

    chat_id = Column(Integer, ForeignKey("chats.chat_id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True, index=True)
    role = Column(String(10), nullable=False, default=ROLE_MEMBER)
    joined_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class UserDocument(Base):
    """
    Table: user_documents
    Metadata of an uploaded object; the bytes live in object storage.
    reference_count tracks how many messages cite the document.
    """
    __tablename__ = "user_documents"

    document_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(20), nullable=False)  # image, video, audio, document
    mime_type = Column(String(127), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_url = Column(Text, nullable=False)
    file_path = Column(String(512), nullable=False)
    reference_count = Column(Integer, nullable=False, default=0)
    upload_date = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class Message(Base):
    """
    Table: messages
    Deleting the chat cascades to its messages (and their statuses).
    """
    __tablename__ = "messages"

    message_id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Integer, ForeignKey("chats.chat_id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    message_text = Column(Text, nullable=True)
    message_type = Column(String(20), nullable=False, default="text")
    file_url = Column(Text, nullable=True)
    file_path = Column(String(512), nullable=True)
    file_name = Column(String(255), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    document_id = Column(Integer, ForeignKey("user_documents.document_id", ondelete="SET NULL"), nullable=True)
    reply_to = Column(Integer, ForeignKey("messages.message_id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class MessageStatus(Base):
    """
    Table: message_status
    One row per (message, member); upserted so re-applying a status is idempotent.
    """
    __tablename__ = "message_status"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_status_message_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("messages.message_id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(10), nullable=False, default=STATUS_SENT)
    status_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class MessageHide(Base):
    """Table: message_hides, per-user "delete for me" markers."""
    __tablename__ = "message_hides"

    message_id = Column(Integer, ForeignKey("messages.message_id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    hidden_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class DeviceToken(Base):
    """Table: device_tokens, push tokens keyed by the token itself."""
    __tablename__ = "device_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    device_token = Column(String(512), nullable=False, unique=True)
    device_name = Column(String(100), nullable=True)
    device_type = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
