"""
Email one-time-password login and JWT session tokens.

Access tokens authenticate HTTP requests and realtime sessions; refresh
tokens can only be exchanged for a new pair at /api/auth/refresh.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from relaychat.codes import CodeStore
from relaychat.config import settings
from relaychat.errors import AuthenticationFailed
from relaychat.mailer import SmtpMailer
from relaychat.schemas import LoginResponse, LoginUserOut, TokenPairResponse, UserOut
from relaychat.storage import find_or_create_user
from relaychat.utils import as_data_uri, generate_otp

logger = logging.getLogger(__name__)

TOKEN_ACCESS = "access"
TOKEN_REFRESH = "refresh"

bearer = HTTPBearer(auto_error=False)


def _encode(user_id: int, email: str, token_type: str, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + lifetime).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_access_token(user_id: int, email: str) -> str:
    return _encode(user_id, email, TOKEN_ACCESS, timedelta(minutes=settings.ACCESS_TOKEN_MINUTES))


def create_refresh_token(user_id: int, email: str) -> str:
    return _encode(user_id, email, TOKEN_REFRESH, timedelta(days=settings.REFRESH_TOKEN_DAYS))


def decode_token(token: str, expected_type: str = TOKEN_ACCESS) -> dict:
    """
    Verify signature, expiry and token type.

    Raises:
        AuthenticationFailed: on any of those checks failing
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.info(f"Token rejected: {e}")
        raise AuthenticationFailed("Invalid or expired token") from e

    if payload.get("type") != expected_type:
        raise AuthenticationFailed("Invalid token type")
    try:
        payload["user_id"] = int(payload["sub"])
    except (KeyError, TypeError, ValueError) as e:
        raise AuthenticationFailed("Invalid token subject") from e
    return payload


def user_id_from_access_token(token: Optional[str]) -> int:
    if not token:
        raise AuthenticationFailed("Access token required")
    return decode_token(token, TOKEN_ACCESS)["user_id"]


async def get_current_user_id(
    cred: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> int:
    if cred is None:
        raise AuthenticationFailed("Access token required")
    return user_id_from_access_token(cred.credentials)


def is_profile_complete(user) -> bool:
    return bool(user.username and user.phone)


def user_out(user) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        name=user.username,
        phone=user.phone,
        profile_photo=as_data_uri(user.profile_photo),
    )


# =============================================================================
# OTP Login Flow
# =============================================================================

async def issue_otp(email: str, codes: CodeStore, mailer: SmtpMailer) -> int:
    """
    Generate a code for `email`, store it and mail it.

    Returns:
        Seconds the code stays valid
    """
    code = generate_otp(settings.OTP_LENGTH)
    codes.set(email, code, settings.OTP_TTL_SECONDS)
    await mailer.send_otp(email, code, settings.OTP_TTL_SECONDS)
    logger.info("OTP issued")
    return settings.OTP_TTL_SECONDS


def verify_otp(db: Session, email: str, otp: str, codes: CodeStore) -> LoginResponse:
    """Consume the code and log the user in, creating the account on first login."""
    if not codes.verify(email, otp):
        raise AuthenticationFailed("Invalid or expired OTP")

    user, created = find_or_create_user(db, email)
    if created:
        logger.info(f"First login, account created: user={user.id}")

    base = user_out(user)
    return LoginResponse(
        token=create_access_token(user.id, user.email),
        refresh_token=create_refresh_token(user.id, user.email),
        user=LoginUserOut(**base.model_dump(), is_profile_complete=is_profile_complete(user)),
    )


def refresh_tokens(refresh_token: str) -> TokenPairResponse:
    payload = decode_token(refresh_token, TOKEN_REFRESH)
    user_id = payload["user_id"]
    email = payload.get("email", "")
    return TokenPairResponse(
        token=create_access_token(user_id, email),
        refresh_token=create_refresh_token(user_id, email),
    )
