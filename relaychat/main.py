import json
import logging
import re
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Query,
    Request,
    Response,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relaychat import storage
from relaychat.auth import (
    get_current_user_id,
    is_profile_complete,
    issue_otp,
    refresh_tokens,
    user_id_from_access_token,
    user_out,
    verify_otp,
)
from relaychat.cache import ResponseCache
from relaychat.config import settings
from relaychat.errors import AccessDenied, AuthenticationFailed, ChatError, NotFound, ValidationFailed
from relaychat.logging_utils import RequestLoggingMiddleware, log_message_data, session_id_ctx, setup_logging
from relaychat.metrics import get_metrics, get_metrics_content_type, set_realtime_sessions
from relaychat.models import CHAT_GROUP, CHAT_PRIVATE, CHAT_SELF, ROLE_ADMIN, ROLE_MEMBER
from relaychat.schemas import (
    ChatListItem,
    ChatListResponse,
    CreateGroupRequest,
    CreateSingleChatRequest,
    DeleteMessageRequest,
    DeviceTokenRequest,
    DocumentOut,
    HealthResponse,
    LoginResponse,
    LoginUserOut,
    MessagesResponse,
    ProfileUpdateRequest,
    RefreshRequest,
    SendMessageRequest,
    SendMessageResponse,
    SendOtpRequest,
    StatusUpdateRequest,
    TokenPairResponse,
    UnregisterDeviceTokenRequest,
    UserTypingEvent,
    VerifyOtpRequest,
)
from relaychat.services import Services, build_services
from relaychat.storage import check_db_health, get_db, init_db
from relaychat.utils import (
    ALLOWED_MIME_TYPES,
    as_data_uri,
    file_type_from_mime,
    folder_for_type,
    strip_data_uri,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the services unless already injected
    """
    init_db()
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    yield


app = FastAPI(
    title="Relay Chat API",
    description="Chat backend with email OTP login, receipts and realtime fan-out",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.limiter = limiter

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_services(request: Request) -> Services:
    return request.app.state.services


DbSession = Annotated[Session, Depends(get_db)]
CurrentUser = Annotated[int, Depends(get_current_user_id)]
AppServices = Annotated[Services, Depends(get_services)]


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse({"success": False, "message": exc.message}, status_code=exc.status_code)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        {"success": False, "message": "Too many requests, please try again later"},
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        {"success": False, "message": "Something went wrong"},
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. JWT_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.JWT_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="JWT_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Auth Routes
# =============================================================================

@app.post("/api/auth/send-otp")
@limiter.limit(settings.OTP_RATE_LIMIT)
async def send_otp(request: Request, body: SendOtpRequest, services: AppServices):
    """Mail a one-time code to the address. Rate limited per client address."""
    expires_in = await issue_otp(body.email, services.codes, services.mailer)
    return {"success": True, "message": "OTP sent to your email", "expiresIn": expires_in}


@app.post("/api/auth/verify-otp", response_model=LoginResponse)
async def verify_otp_route(body: VerifyOtpRequest, db: DbSession, services: AppServices) -> LoginResponse:
    """
    Exchange a mailed code for an access/refresh token pair.
    The account is created on first successful verification.
    """
    return verify_otp(db, body.email, body.otp, services.codes)


@app.post("/api/auth/refresh", response_model=TokenPairResponse)
async def refresh(body: RefreshRequest) -> TokenPairResponse:
    return refresh_tokens(body.refresh_token)


# =============================================================================
# Profile Routes
# =============================================================================

def _login_user(user) -> LoginUserOut:
    return LoginUserOut(**user_out(user).model_dump(), is_profile_complete=is_profile_complete(user))


@app.get("/api/profile/me")
async def get_profile(user_id: CurrentUser, db: DbSession):
    user = storage.get_user_by_id(db, user_id)
    if user is None:
        raise NotFound("User not found")
    return {"success": True, "user": _login_user(user)}


@app.put("/api/profile/update")
async def update_profile(body: ProfileUpdateRequest, user_id: CurrentUser, db: DbSession):
    """
    Set name, phone and optional photo.

    - name: at least 2 characters after trimming
    - phone: exactly 10 digits once non-digits are removed
    - profilePhoto: base64, any data-URI prefix is dropped
    """
    name = body.name.strip()
    if len(name) < 2:
        raise ValidationFailed("Name must be at least 2 characters")
    phone = re.sub(r"\D", "", body.phone)
    if len(phone) != 10:
        raise ValidationFailed("Phone number must be 10 digits")

    user = storage.update_profile(db, user_id, name, phone, strip_data_uri(body.profile_photo))
    if user is None:
        raise NotFound("User not found")
    logger.info(f"Profile updated: user={user_id}")
    return {"success": True, "message": "Profile updated successfully", "user": _login_user(user)}


# =============================================================================
# Chat Routes
# =============================================================================

def _invalidate(services: Services, user_ids) -> None:
    services.cache.invalidate_chat_lists(user_ids)


@app.post("/api/chats/self/init")
async def init_self_chat(user_id: CurrentUser, db: DbSession, services: AppServices):
    chat_id = storage.get_or_create_self_chat(db, user_id)
    _invalidate(services, [user_id])
    return {"success": True, "chatId": chat_id}


@app.post("/api/chats/single/create")
async def create_single_chat(body: CreateSingleChatRequest, user_id: CurrentUser, db: DbSession,
                             services: AppServices):
    other = storage.find_user_by_email_excluding(db, body.email, user_id)
    if other is None:
        raise NotFound("User not found with this email")

    chat_id = storage.get_or_create_private_chat(db, user_id, other.id)
    _invalidate(services, [user_id, other.id])
    return {
        "success": True,
        "chatId": chat_id,
        "user": {
            "id": other.id,
            "email": other.email,
            "username": other.username,
            "profilePhoto": as_data_uri(other.profile_photo),
        },
    }


@app.post("/api/chats/group/create", status_code=status.HTTP_201_CREATED)
async def create_group_chat(body: CreateGroupRequest, user_id: CurrentUser, db: DbSession,
                            services: AppServices):
    """
    Create a group with the caller as admin. Unknown emails are reported
    back in failedMembers instead of failing the request.
    """
    chat = storage.create_chat(db, CHAT_GROUP, user_id, title=body.group_name.strip())
    storage.add_member(db, chat.chat_id, user_id, ROLE_ADMIN)

    added, failed = [], []
    for raw_email in body.member_emails:
        email = raw_email.strip().lower()
        member = storage.get_user_by_email(db, email)
        if member is None:
            failed.append(email)
        elif member.id != user_id:
            storage.add_member(db, chat.chat_id, member.id, ROLE_MEMBER)
            added.append({"email": email, "username": member.username, "userId": member.id})

    logger.info(f"Group created: chat={chat.chat_id}, added={len(added)}, failed={len(failed)}")
    _invalidate(services, [user_id] + [m["userId"] for m in added])
    return {
        "success": True,
        "chatId": chat.chat_id,
        "groupName": chat.title,
        "message": "Group created successfully",
        "addedMembers": added,
        "failedMembers": failed,
    }


def _chat_list_item(row: dict) -> ChatListItem:
    if row["type"] == CHAT_SELF:
        name, avatar = "My Notes", row["avatar"]
    elif row["type"] == CHAT_PRIVATE:
        name = row["other_user_name"] or row["other_user_email"]
        avatar = as_data_uri(row["other_user_photo"])
    else:
        name, avatar = row["title"], row["avatar"]
    return ChatListItem(
        chat_id=row["chat_id"],
        type=row["type"],
        name=name,
        avatar=avatar,
        last_message=row["last_message"],
        last_message_time=row["last_message_time"],
        unread_count=row["unread_count"],
        other_user_email=row["other_user_email"] if row["type"] == CHAT_PRIVATE else None,
    )


@app.get("/api/chats/list", response_model=ChatListResponse)
async def list_chats(user_id: CurrentUser, db: DbSession, services: AppServices):
    """Chats of the caller, most recent activity first."""
    key = ResponseCache.chat_list_key(user_id)
    cached = services.cache.get(key)
    if cached is not None:
        return cached

    result = ChatListResponse(chats=[_chat_list_item(row) for row in storage.get_user_chats(db, user_id)])
    services.cache.set(key, result.model_dump(mode="json", by_alias=True))
    return result


@app.get("/api/chats/{chat_id}")
async def get_chat_details(chat_id: int, user_id: CurrentUser, db: DbSession, services: AppServices):
    chat = services.pipeline.require_chat_member(db, chat_id, user_id)

    other_user = None
    if chat.type == CHAT_SELF:
        title = "You"
    elif chat.type == CHAT_PRIVATE:
        other = storage.get_other_member(db, chat_id, user_id)
        title = (other.username or other.email) if other else "Chat"
        if other is not None:
            other_user = {
                "id": other.id,
                "email": other.email,
                "username": other.username,
                "profilePhoto": as_data_uri(other.profile_photo),
            }
    else:
        title = chat.title or "Group Chat"

    return {
        "success": True,
        "chat": {
            "chatId": chat.chat_id,
            "type": chat.type,
            "title": title,
            "avatar": chat.avatar,
            "createdAt": chat.created_at,
            "memberCount": len(storage.get_member_ids(db, chat_id)),
            "otherUser": other_user,
        },
    }


@app.get("/api/chats/{chat_id}/members")
async def get_chat_members(chat_id: int, user_id: CurrentUser, db: DbSession, services: AppServices):
    services.pipeline.require_chat_member(db, chat_id, user_id)
    members = [
        {
            "userId": row.user_id,
            "username": row.username,
            "email": row.email,
            "profilePhoto": as_data_uri(row.profile_photo),
            "role": row.role,
        }
        for row in storage.get_chat_members(db, chat_id)
    ]
    return {"success": True, "members": members}


@app.get("/api/chats/{chat_id}/messages", response_model=MessagesResponse)
async def get_chat_messages(
    chat_id: int,
    user_id: CurrentUser,
    db: DbSession,
    services: AppServices,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of newest messages to skip")] = 0,
) -> MessagesResponse:
    """
    Page of history, oldest first. `offset` counts back from the newest
    message. Each message carries its tick state as the caller sees it.
    """
    messages = services.pipeline.list_messages(db, chat_id, user_id, limit=limit, offset=offset)
    return MessagesResponse(messages=messages)


@app.post(
    "/api/chats/{chat_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    chat_id: int,
    body: SendMessageRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    user_id: CurrentUser,
    db: DbSession,
    services: AppServices,
) -> SendMessageResponse:
    """
    Send a message. Realtime fan-out and push notifications run after
    the response is returned.
    """
    message, job = services.pipeline.send_message(db, chat_id, user_id, body)
    background_tasks.add_task(services.pipeline.deliver, job)
    log_message_data(request, message_id=message.id, chat_id=chat_id, result="sent")
    return SendMessageResponse(message=message)


@app.post("/api/chats/{chat_id}/read")
async def mark_chat_as_read(chat_id: int, request: Request, user_id: CurrentUser, db: DbSession,
                            services: AppServices):
    marked = await services.pipeline.mark_chat_as_read(db, chat_id, user_id)
    log_message_data(request, chat_id=chat_id, result="marked_read")
    return {"success": True, "markedCount": len(marked)}


@app.delete("/api/chats/{chat_id}")
async def delete_chat(chat_id: int, user_id: CurrentUser, db: DbSession, services: AppServices):
    services.pipeline.require_chat_member(db, chat_id, user_id)
    member_ids = storage.get_member_ids(db, chat_id)
    if not storage.delete_chat(db, chat_id):
        raise NotFound("Chat not found")
    _invalidate(services, member_ids)
    logger.info(f"Chat deleted: chat={chat_id}, by={user_id}")
    return {"success": True, "message": "Chat deleted successfully"}


@app.patch("/api/chats/messages/{message_id}/status")
async def update_message_status(message_id: int, body: StatusUpdateRequest, request: Request,
                                user_id: CurrentUser, db: DbSession, services: AppServices):
    applied = await services.pipeline.update_status(db, message_id, user_id, body.status)
    log_message_data(request, message_id=message_id, result="status_updated" if applied else "status_ignored")
    return {"success": True, "message": "Status updated" if applied else "Status unchanged"}


@app.delete("/api/chats/messages/{message_id}")
async def delete_message(message_id: int, request: Request, user_id: CurrentUser, db: DbSession,
                         services: AppServices, body: Optional[DeleteMessageRequest] = None):
    """
    - forMe: hides the message from the caller's history only
    - forEveryone: sender only; removes it for all members and notifies them
    """
    delete_type = body.delete_type if body is not None else "forMe"
    outcome = await services.pipeline.delete_message(db, message_id, user_id, delete_type)
    log_message_data(
        request,
        message_id=message_id,
        chat_id=outcome["chat_id"],
        result="deleted_for_everyone" if outcome["delete_type"] == "forEveryone" else "deleted_for_me",
    )
    return {"success": True, "message": "Message deleted", "deleteType": outcome["delete_type"]}


# =============================================================================
# Device Token Routes
# =============================================================================

@app.post("/api/fcm/register")
async def register_device_token(body: DeviceTokenRequest, user_id: CurrentUser, db: DbSession):
    storage.save_device_token(db, user_id, body.device_token, body.device_name, body.device_type)
    logger.info(f"Device token registered: user={user_id}, type={body.device_type}")
    return {"success": True, "message": "FCM token registered successfully"}


@app.post("/api/fcm/unregister")
async def unregister_device_token(body: UnregisterDeviceTokenRequest, user_id: CurrentUser, db: DbSession):
    if body.device_token not in storage.get_user_device_tokens(db, user_id):
        raise NotFound("Token not found")
    storage.delete_device_token(db, body.device_token)
    return {"success": True, "message": "FCM token removed successfully"}


@app.get("/api/fcm/tokens")
async def list_device_tokens(user_id: CurrentUser, db: DbSession):
    return {"success": True, "tokens": storage.get_user_device_tokens(db, user_id)}


# =============================================================================
# Upload Routes
# =============================================================================

def _document_out(document, url: Optional[str] = None) -> DocumentOut:
    return DocumentOut(
        document_id=document.document_id,
        file_name=document.file_name,
        file_type=document.file_type,
        file_size=document.file_size,
        url=url or document.file_url,
        upload_date=document.upload_date,
    )


@app.post("/api/upload", status_code=status.HTTP_201_CREATED)
async def upload_file(user_id: CurrentUser, db: DbSession, services: AppServices,
                      file: UploadFile = File(...)):
    """
    Store an attachment and record it as a document of the caller.
    Send it by passing the returned documentId with a message.
    """
    mime_type = (file.content_type or "").lower()
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationFailed(f"File type not allowed: {mime_type or 'unknown'}")

    data = await file.read()
    if not data:
        raise ValidationFailed("File is empty")
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise ValidationFailed(f"File too large (max {settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB)")

    file_name = file.filename or "file"
    file_type = file_type_from_mime(mime_type)
    stored = await services.objects.put(data, file_name, mime_type, folder_for_type(file_type), user_id)
    document = storage.create_document(
        db,
        user_id=user_id,
        file_name=file_name,
        file_type=file_type,
        mime_type=mime_type,
        file_size=len(data),
        file_url=stored.url,
        file_path=stored.path,
    )
    return {
        "success": True,
        "message": "File uploaded successfully",
        "document": _document_out(document),
        "filePath": stored.path,
    }


@app.get("/api/documents")
async def list_documents(
    user_id: CurrentUser,
    db: DbSession,
    file_type: Annotated[Optional[str], Query(alias="type", description="image, video, audio or document")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
):
    documents = storage.get_user_documents(db, user_id, file_type=file_type, limit=limit, offset=offset)
    return {"success": True, "documents": [_document_out(d) for d in documents]}


@app.get("/api/documents/{document_id}/url")
async def get_document_url(document_id: int, user_id: CurrentUser, db: DbSession, services: AppServices):
    """Fresh signed download URL for one of the caller's documents."""
    document = storage.get_document(db, document_id)
    if document is None:
        raise NotFound("Document not found")
    if document.user_id != user_id:
        raise AccessDenied("Access denied")
    url = await services.objects.signed_url(document.file_path, document.file_name)
    return {"success": True, "url": url, "expiresInDays": settings.SIGNED_URL_DAYS}


@app.get("/api/storage/usage")
async def storage_usage(user_id: CurrentUser, db: DbSession):
    total = storage.get_user_storage_usage(db, user_id)
    return {
        "success": True,
        "usage": {
            "bytes": total,
            "mb": round(total / (1024 * 1024), 2),
            "gb": round(total / (1024 * 1024 * 1024), 2),
        },
    }


# =============================================================================
# Realtime
# =============================================================================

EVENT_REGISTERED = "registered"
EVENT_JOINED_CHAT = "joined_chat"
EVENT_ERROR = "error"


def _chat_id_of(data: dict) -> int:
    try:
        return int(data.get("chatId"))
    except (TypeError, ValueError):
        raise ValidationFailed("chatId is required")


async def _handle_frame(services: Services, session_id: str, event: str, data: dict) -> None:
    presence = services.presence
    router = services.router

    if event == "register":
        user_id = user_id_from_access_token(data.get("token"))
        presence.register(session_id, user_id)
        set_realtime_sessions(presence.session_count())
        logger.info(f"Realtime session registered: user={user_id}")
        await router.emit_to_session(session_id, EVENT_REGISTERED, {"userId": user_id})
        return

    user_id = presence.user_for_session(session_id)
    if user_id is None:
        raise AuthenticationFailed("Register before sending events")

    if event == "join_chat":
        chat_id = _chat_id_of(data)
        with services.pipeline.session_factory() as db:
            if not storage.is_member(db, chat_id, user_id):
                raise AccessDenied("Access denied")
        presence.join_chat_room(session_id, chat_id)
        await router.emit_to_session(session_id, EVENT_JOINED_CHAT, {"chatId": chat_id})

    elif event == "leave_chat":
        presence.leave_chat_room(session_id, _chat_id_of(data))

    elif event == "typing":
        chat_id = _chat_id_of(data)
        if session_id in presence.sessions_in_room(chat_id):
            await router.user_typing(
                chat_id, session_id, UserTypingEvent(user_id=user_id, is_typing=bool(data.get("isTyping")))
            )

    elif event == "clear_unread":
        chat_id = _chat_id_of(data)
        with services.pipeline.session_factory() as db:
            await services.pipeline.clear_unread(db, chat_id, user_id)

    else:
        logger.debug(f"Ignoring unknown realtime event: {event}")


@app.websocket("/ws")
async def realtime(websocket: WebSocket):
    """
    Realtime channel. Frames in both directions are {"event", "data"}.
    A session must `register` with an access token before anything else.
    """
    services: Services = websocket.app.state.services
    session_id = uuid.uuid4().hex
    log_scope = session_id_ctx.set(session_id)
    await websocket.accept()
    services.hub.attach(session_id, websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.warning(f"Dropping malformed realtime frame on session {session_id}")
                continue
            if not isinstance(frame, dict):
                continue

            data = frame.get("data")
            try:
                await _handle_frame(services, session_id, frame.get("event"), data if isinstance(data, dict) else {})
            except ChatError as e:
                await services.router.emit_to_session(session_id, EVENT_ERROR, {
                    "event": frame.get("event"),
                    "message": e.message,
                })
            except SQLAlchemyError as e:
                logger.error(f"Realtime event {frame.get('event')} failed on session {session_id}: {e}")
                await services.router.emit_to_session(session_id, EVENT_ERROR, {
                    "event": frame.get("event"),
                    "message": "Something went wrong",
                })
    except WebSocketDisconnect:
        pass
    finally:
        services.hub.detach(session_id)
        user_id = services.presence.unregister(session_id)
        set_realtime_sessions(services.presence.session_count())
        if user_id is not None:
            logger.info(f"Realtime session closed: user={user_id}")
        session_id_ctx.reset(log_scope)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
