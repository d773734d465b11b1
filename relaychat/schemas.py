"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- Realtime event payloads pushed to sessions

Field names are snake_case in Python and camelCase on the wire.
"""

import re
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MessageType = Literal["text", "image", "video", "audio", "document"]
TickStatus = Literal["sent", "delivered", "read"]
DeleteType = Literal["forMe", "forEveryone"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_email(v: str) -> str:
    v = v.strip().lower()
    if not EMAIL_RE.match(v):
        raise ValueError("Invalid email format")
    return v


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendOtpRequest(CamelModel):
    email: str = Field(..., description="Address the code is mailed to")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _normalize_email(v)


class VerifyOtpRequest(CamelModel):
    email: str
    otp: str = Field(..., min_length=1, description="Code received by email")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _normalize_email(v)

    @field_validator("otp", mode="before")
    @classmethod
    def coerce_otp(cls, v):
        # Mobile clients send the code as a number
        return str(v).strip() if v is not None else v


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1)


class ProfileUpdateRequest(CamelModel):
    name: str
    phone: str
    profile_photo: Optional[str] = Field(None, description="Base64 image, data-URI prefix allowed")


class CreateSingleChatRequest(CamelModel):
    email: str = Field(..., min_length=1)


class CreateGroupRequest(CamelModel):
    group_name: str = Field(..., min_length=1, max_length=200)
    member_emails: List[str] = Field(..., min_length=1)


class SendMessageRequest(CamelModel):
    """
    Body of a new message. At least one of text, file_url or document_id
    must be present; the pipeline rejects the request otherwise.
    """
    text: Optional[str] = Field(None, max_length=10000)
    type: MessageType = "text"
    file_url: Optional[str] = None
    file_path: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    document_id: Optional[int] = None
    reply_to_id: Optional[int] = None


class StatusUpdateRequest(CamelModel):
    status: TickStatus


class DeleteMessageRequest(CamelModel):
    delete_type: DeleteType = "forMe"


class DeviceTokenRequest(CamelModel):
    device_token: str = Field(..., min_length=1)
    device_name: Optional[str] = None
    device_type: Optional[str] = None


class UnregisterDeviceTokenRequest(CamelModel):
    device_token: str = Field(..., min_length=1)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ReplyPreview(CamelModel):
    id: str
    text: Optional[str] = None
    sender_name: str


class MessageOut(CamelModel):
    """A message as shown to one viewer."""
    id: str
    text: Optional[str] = None
    type: str
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    timestamp: datetime
    is_sent: bool
    status: TickStatus
    sender_id: int
    sender_name: Optional[str] = None
    sender_avatar: Optional[str] = None
    reply_to: Optional[ReplyPreview] = None


class SendMessageResponse(CamelModel):
    success: bool = True
    message: MessageOut


class MessagesResponse(CamelModel):
    success: bool = True
    messages: List[MessageOut] = Field(default_factory=list)


class ChatListItem(CamelModel):
    chat_id: int
    type: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    last_message: Optional[str] = None
    last_message_time: Optional[datetime] = None
    unread_count: int = 0
    other_user_email: Optional[str] = None


class ChatListResponse(CamelModel):
    success: bool = True
    chats: List[ChatListItem] = Field(default_factory=list)


class UserOut(CamelModel):
    id: int
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    profile_photo: Optional[str] = None


class LoginUserOut(UserOut):
    is_profile_complete: bool


class LoginResponse(CamelModel):
    success: bool = True
    message: str = "Login successful"
    token: str
    refresh_token: str
    user: LoginUserOut


class TokenPairResponse(CamelModel):
    success: bool = True
    token: str
    refresh_token: str


class DocumentOut(CamelModel):
    document_id: int
    file_name: str
    file_type: str
    file_size: int
    url: str
    upload_date: datetime


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Realtime Event Payloads
# =============================================================================

class NewMessageEvent(CamelModel):
    id: str
    text: Optional[str] = None
    type: str
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    timestamp: datetime
    is_sent: bool = False
    status: TickStatus = "delivered"
    sender_id: int
    sender_name: str
    chat_id: str
    reply_to: Optional[ReplyPreview] = None


class ChatListUpdateEvent(CamelModel):
    chat_id: str
    last_message: Optional[str] = None
    last_message_time: Optional[datetime] = None
    sender_name: str
    unread_count: int


class MessageStatusUpdateEvent(CamelModel):
    message_id: str
    status: TickStatus
    chat_id: str


class MessageDeletedEvent(CamelModel):
    message_id: str
    chat_id: str
    deleted_by: int


class UserTypingEvent(CamelModel):
    user_id: int
    is_typing: bool
