import logging
from datetime import datetime, timedelta, timezone
from typing import Generator, List, Optional, Tuple

from sqlalchemy import create_engine, event, func, inspect, select, text, update, delete
from sqlalchemy.orm import sessionmaker, Session, declarative_base, aliased

from relaychat.config import settings

logger = logging.getLogger(__name__)


def _make_engine(url: str):
    # check_same_thread=False lets SQLite connections cross FastAPI's threadpool
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    new_engine = create_engine(url, connect_args=connect_args, echo=False)

    if url.startswith("sqlite"):
        @event.listens_for(new_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = _make_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from relaychat import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        required = ("users", "chats", "chat_members", "messages", "message_status")
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in required if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def dialect_insert(db: Session, table):
    """INSERT construct supporting ON CONFLICT for the bound dialect."""
    if db.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert(table)


# =============================================================================
# User Repository Functions
# =============================================================================

def get_user_by_id(db: Session, user_id: int):
    from relaychat.models import User

    return db.get(User, user_id)


def get_user_by_email(db: Session, email: str):
    from relaychat.models import User

    return db.execute(
        select(User).where(func.lower(User.email) == email.strip().lower())
    ).scalar_one_or_none()


def find_user_by_email_excluding(db: Session, email: str, exclude_user_id: int):
    from relaychat.models import User

    return db.execute(
        select(User).where(
            func.lower(User.email) == email.strip().lower(),
            User.id != exclude_user_id,
        )
    ).scalar_one_or_none()


def find_or_create_user(db: Session, email: str) -> Tuple[object, bool]:
    """
    Find a user by email or create one.

    Returns:
        Tuple of (user, created)
    """
    from relaychat.models import User

    user = get_user_by_email(db, email)
    if user is not None:
        return user, False

    user = User(email=email.strip().lower())
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"User created: id={user.id}")
    return user, True


def update_profile(db: Session, user_id: int, name: str, phone: str, profile_photo: Optional[str]):
    user = get_user_by_id(db, user_id)
    if user is None:
        return None
    user.username = name
    user.phone = phone
    user.profile_photo = profile_photo
    db.commit()
    db.refresh(user)
    return user


# =============================================================================
# Chat Repository Functions
# =============================================================================

def create_chat(db: Session, chat_type: str, created_by: int, title: Optional[str] = None,
                avatar: Optional[str] = None):
    from relaychat.models import Chat

    chat = Chat(type=chat_type, created_by=created_by, title=title, avatar=avatar)
    db.add(chat)
    db.commit()
    db.refresh(chat)
    logger.info(f"Chat created: id={chat.chat_id}, type={chat_type}")
    return chat


def get_chat(db: Session, chat_id: int):
    from relaychat.models import Chat

    return db.get(Chat, chat_id)


def add_member(db: Session, chat_id: int, user_id: int, role: str = "member") -> bool:
    """
    Add a user to a chat. Adding an existing member is a no-op.

    Returns:
        True if a membership row was inserted
    """
    from relaychat.models import ChatMember, utcnow

    stmt = dialect_insert(db, ChatMember).values(
        chat_id=chat_id, user_id=user_id, role=role, joined_at=utcnow()
    ).on_conflict_do_nothing(index_elements=["chat_id", "user_id"])
    result = db.execute(stmt)
    db.commit()
    return result.rowcount > 0


def is_member(db: Session, chat_id: int, user_id: int) -> bool:
    from relaychat.models import ChatMember

    return db.execute(
        select(ChatMember.user_id).where(
            ChatMember.chat_id == chat_id, ChatMember.user_id == user_id
        )
    ).first() is not None


def get_member_ids(db: Session, chat_id: int) -> List[int]:
    from relaychat.models import ChatMember

    return list(db.execute(
        select(ChatMember.user_id).where(ChatMember.chat_id == chat_id)
    ).scalars())


def get_chat_members(db: Session, chat_id: int) -> list:
    """
    Members of a chat joined with their user rows.

    Returns:
        Rows with user_id, role, username, email, profile_photo;
        admins first, then by name
    """
    from relaychat.models import ChatMember, User

    return db.execute(
        select(
            ChatMember.user_id,
            ChatMember.role,
            User.username,
            User.email,
            User.profile_photo,
        )
        .join(User, User.id == ChatMember.user_id)
        .where(ChatMember.chat_id == chat_id)
        .order_by(ChatMember.role.asc(), User.username.asc())
    ).all()


def get_or_create_self_chat(db: Session, user_id: int) -> int:
    from relaychat.models import Chat, ChatMember

    existing = db.execute(
        select(Chat.chat_id)
        .join(ChatMember, ChatMember.chat_id == Chat.chat_id)
        .where(Chat.type == "self", ChatMember.user_id == user_id)
        .limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    chat = create_chat(db, "self", user_id)
    add_member(db, chat.chat_id, user_id, "admin")
    return chat.chat_id


def get_or_create_private_chat(db: Session, user_id: int, other_user_id: int) -> int:
    """
    Return the private chat between two users, creating it when absent.

    The existence check and the insert are separate statements, so two
    concurrent calls for the same pair can both create a chat.
    """
    from relaychat.models import Chat, ChatMember

    mine = aliased(ChatMember)
    theirs = aliased(ChatMember)
    existing = db.execute(
        select(Chat.chat_id)
        .join(mine, mine.chat_id == Chat.chat_id)
        .join(theirs, theirs.chat_id == Chat.chat_id)
        .where(
            Chat.type == "private",
            mine.user_id == user_id,
            theirs.user_id == other_user_id,
        )
        .limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    chat = create_chat(db, "private", user_id)
    add_member(db, chat.chat_id, user_id, "admin")
    add_member(db, chat.chat_id, other_user_id, "member")
    return chat.chat_id


def delete_chat(db: Session, chat_id: int) -> bool:
    """
    Delete a chat; members, messages and statuses go with it.
    Documents cited by the chat's messages lose one reference per message.
    """
    from relaychat.models import Chat, Message

    cited = db.execute(
        select(Message.document_id).where(
            Message.chat_id == chat_id, Message.document_id.is_not(None)
        )
    ).scalars().all()

    result = db.execute(delete(Chat).where(Chat.chat_id == chat_id))
    db.commit()
    if result.rowcount == 0:
        return False

    for document_id in cited:
        decrement_reference_count(db, document_id)
    return True


def get_last_message(db: Session, chat_id: int):
    from relaychat.models import Message

    return db.execute(
        select(Message)
        .where(Message.chat_id == chat_id)
        .order_by(Message.created_at.desc(), Message.message_id.desc())
        .limit(1)
    ).scalar_one_or_none()


def get_other_member(db: Session, chat_id: int, user_id: int):
    """First member of the chat that is not `user_id`, as a User."""
    from relaychat.models import ChatMember, User

    return db.execute(
        select(User)
        .join(ChatMember, ChatMember.user_id == User.id)
        .where(ChatMember.chat_id == chat_id, ChatMember.user_id != user_id)
        .limit(1)
    ).scalar_one_or_none()


def get_user_chats(db: Session, user_id: int) -> List[dict]:
    """
    Chat list of a user with last message, unread count and the other
    member of private chats.

    Returns:
        List of dicts ordered by last message time, chats without
        messages last
    """
    from relaychat.models import Chat, ChatMember
    from relaychat.ledger import unread_count

    chats = db.execute(
        select(Chat)
        .join(ChatMember, ChatMember.chat_id == Chat.chat_id)
        .where(ChatMember.user_id == user_id)
    ).scalars().all()

    rows = []
    for chat in chats:
        last = get_last_message(db, chat.chat_id)
        other = get_other_member(db, chat.chat_id, user_id)
        rows.append({
            "chat_id": chat.chat_id,
            "type": chat.type,
            "title": chat.title,
            "avatar": chat.avatar,
            "created_at": chat.created_at,
            "last_message": last.message_text if last else None,
            "last_message_time": last.created_at if last else None,
            "unread_count": unread_count(db, chat.chat_id, user_id),
            "other_user_name": other.username if other else None,
            "other_user_email": other.email if other else None,
            "other_user_photo": other.profile_photo if other else None,
        })

    with_messages = [r for r in rows if r["last_message_time"] is not None]
    without_messages = [r for r in rows if r["last_message_time"] is None]
    with_messages.sort(key=lambda r: r["last_message_time"], reverse=True)
    return with_messages + without_messages


def get_user_chat(db: Session, user_id: int, chat_id: int) -> Optional[dict]:
    for row in get_user_chats(db, user_id):
        if row["chat_id"] == chat_id:
            return row
    return None


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    chat_id: int,
    sender_id: int,
    text: Optional[str],
    message_type: str = "text",
    file_url: Optional[str] = None,
    file_path: Optional[str] = None,
    file_name: Optional[str] = None,
    file_size: Optional[int] = None,
    document_id: Optional[int] = None,
    reply_to: Optional[int] = None,
):
    from relaychat.models import Message

    message = Message(
        chat_id=chat_id,
        sender_id=sender_id,
        message_text=text,
        message_type=message_type,
        file_url=file_url,
        file_path=file_path,
        file_name=file_name,
        file_size=file_size,
        document_id=document_id,
        reply_to=reply_to,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(f"Message created: id={message.message_id}, chat={chat_id}, sender={sender_id}")
    return message


def get_message(db: Session, message_id: int):
    from relaychat.models import Message

    return db.get(Message, message_id)


def get_chat_messages(db: Session, chat_id: int, viewer_id: int, limit: int = 50, offset: int = 0) -> list:
    """
    Page of chat history for one viewer, oldest first.

    Messages the viewer deleted for themselves are left out. Each row
    carries the Message plus sender and reply-preview columns.
    """
    from relaychat.models import Message, MessageHide, User

    sender = aliased(User)
    replied = aliased(Message)
    reply_sender = aliased(User)

    hidden = select(MessageHide.message_id).where(MessageHide.user_id == viewer_id)

    rows = db.execute(
        select(
            Message,
            sender.username.label("sender_name"),
            sender.email.label("sender_email"),
            sender.profile_photo.label("sender_avatar"),
            replied.message_text.label("reply_text"),
            reply_sender.username.label("reply_sender_name"),
            reply_sender.email.label("reply_sender_email"),
        )
        .outerjoin(sender, sender.id == Message.sender_id)
        .outerjoin(replied, replied.message_id == Message.reply_to)
        .outerjoin(reply_sender, reply_sender.id == replied.sender_id)
        .where(Message.chat_id == chat_id, Message.message_id.not_in(hidden))
        .order_by(Message.created_at.desc(), Message.message_id.desc())
        .limit(limit)
        .offset(offset)
    ).all()
    rows.reverse()
    return rows


def update_message_text(db: Session, message_id: int, sender_id: int, new_text: str):
    """Edit a message's text; only its sender may. Returns None otherwise."""
    from relaychat.models import Message, utcnow

    message = get_message(db, message_id)
    if message is None or message.sender_id != sender_id:
        return None
    message.message_text = new_text
    message.updated_at = utcnow()
    db.commit()
    db.refresh(message)
    return message


def delete_message(db: Session, message_id: int) -> bool:
    from relaychat.models import Message

    result = db.execute(delete(Message).where(Message.message_id == message_id))
    db.commit()
    return result.rowcount > 0


def hide_message(db: Session, message_id: int, user_id: int) -> None:
    from relaychat.models import MessageHide, utcnow

    stmt = dialect_insert(db, MessageHide).values(
        message_id=message_id, user_id=user_id, hidden_at=utcnow()
    ).on_conflict_do_nothing(index_elements=["message_id", "user_id"])
    db.execute(stmt)
    db.commit()


# =============================================================================
# Document Repository Functions
# =============================================================================

def create_document(
    db: Session,
    user_id: int,
    file_name: str,
    file_type: str,
    mime_type: str,
    file_size: int,
    file_url: str,
    file_path: str,
):
    from relaychat.models import UserDocument

    document = UserDocument(
        user_id=user_id,
        file_name=file_name,
        file_type=file_type,
        mime_type=mime_type,
        file_size=file_size,
        file_url=file_url,
        file_path=file_path,
        reference_count=0,
    )
    db.add(document)
    db.commit()
    db.refresh(document)
    logger.info(f"Document created: id={document.document_id}, path={file_path}")
    return document


def get_document(db: Session, document_id: int):
    from relaychat.models import UserDocument

    return db.get(UserDocument, document_id)


def get_document_by_path(db: Session, file_path: str):
    from relaychat.models import UserDocument

    return db.execute(
        select(UserDocument).where(UserDocument.file_path == file_path).limit(1)
    ).scalar_one_or_none()


def get_user_documents(db: Session, user_id: int, file_type: Optional[str] = None,
                       limit: int = 50, offset: int = 0) -> list:
    from relaychat.models import UserDocument

    query = select(UserDocument).where(UserDocument.user_id == user_id)
    if file_type:
        query = query.where(UserDocument.file_type == file_type)
    query = query.order_by(UserDocument.upload_date.desc(), UserDocument.document_id.desc())
    return db.execute(query.limit(limit).offset(offset)).scalars().all()


def increment_reference_count(db: Session, document_id: int) -> Optional[int]:
    from relaychat.models import UserDocument

    db.execute(
        update(UserDocument)
        .where(UserDocument.document_id == document_id)
        .values(reference_count=UserDocument.reference_count + 1)
    )
    db.commit()
    document = get_document(db, document_id)
    return document.reference_count if document else None


def decrement_reference_count(db: Session, document_id: int) -> Optional[int]:
    """Decrement without going below zero."""
    from relaychat.models import UserDocument

    db.execute(
        update(UserDocument)
        .where(UserDocument.document_id == document_id, UserDocument.reference_count > 0)
        .values(reference_count=UserDocument.reference_count - 1)
    )
    db.commit()
    document = get_document(db, document_id)
    return document.reference_count if document else None


def delete_document(db: Session, document_id: int) -> bool:
    """Delete a document row, only while nothing references it."""
    from relaychat.models import UserDocument

    result = db.execute(
        delete(UserDocument).where(
            UserDocument.document_id == document_id,
            UserDocument.reference_count == 0,
        )
    )
    db.commit()
    return result.rowcount > 0


def get_user_storage_usage(db: Session, user_id: int) -> int:
    from relaychat.models import UserDocument

    total = db.execute(
        select(func.coalesce(func.sum(UserDocument.file_size), 0)).where(UserDocument.user_id == user_id)
    ).scalar()
    return int(total or 0)


def find_orphaned_documents(db: Session, days_old: int = 7, now: Optional[datetime] = None) -> list:
    """Documents nothing references that were uploaded more than `days_old` days ago."""
    from relaychat.models import UserDocument

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days_old)
    return db.execute(
        select(UserDocument).where(
            UserDocument.reference_count == 0,
            UserDocument.upload_date < cutoff,
        )
    ).scalars().all()


# =============================================================================
# Device Token Repository Functions
# =============================================================================

def save_device_token(db: Session, user_id: int, device_token: str,
                      device_name: Optional[str] = None, device_type: Optional[str] = None):
    """
    Upsert a push token. A token re-registered by another account moves
    to that account.
    """
    from relaychat.models import DeviceToken, utcnow

    now = utcnow()
    stmt = dialect_insert(db, DeviceToken).values(
        user_id=user_id,
        device_token=device_token,
        device_name=device_name,
        device_type=device_type,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["device_token"],
        set_={
            "user_id": user_id,
            "updated_at": now,
            "device_name": func.coalesce(stmt.excluded.device_name, DeviceToken.device_name),
            "device_type": func.coalesce(stmt.excluded.device_type, DeviceToken.device_type),
        },
    )
    db.execute(stmt)
    db.commit()
    return db.execute(
        select(DeviceToken).where(DeviceToken.device_token == device_token)
    ).scalar_one()


def get_user_device_tokens(db: Session, user_id: int) -> List[str]:
    from relaychat.models import DeviceToken

    return list(db.execute(
        select(DeviceToken.device_token)
        .where(DeviceToken.user_id == user_id)
        .order_by(DeviceToken.updated_at.desc())
    ).scalars())


def delete_device_token(db: Session, device_token: str) -> bool:
    from relaychat.models import DeviceToken

    result = db.execute(delete(DeviceToken).where(DeviceToken.device_token == device_token))
    db.commit()
    return result.rowcount > 0
