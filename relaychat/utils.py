"""
Utility functions for the chat service.
"""

import hmac
import logging
import os
import re
import secrets
from typing import Optional

logger = logging.getLogger(__name__)


ALLOWED_MIME_TYPES = frozenset({
    "image/jpeg", "image/png", "image/gif", "image/webp",
    "video/mp4", "video/quicktime", "video/x-msvideo",
    "audio/mpeg", "audio/wav", "audio/ogg", "audio/mp4",
    "application/pdf", "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
})

FOLDERS = {
    "image": "images",
    "video": "videos",
    "audio": "audio",
    "document": "documents",
}

_DATA_URI_PREFIX = re.compile(r"^data:image/[a-z]+;base64,")


def codes_match(expected: str, received: str) -> bool:
    """Constant-time comparison of two codes as strings."""
    return hmac.compare_digest(str(expected).encode("utf-8"), str(received).encode("utf-8"))


def generate_otp(length: int = 6) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def file_type_from_mime(mime_type: str) -> str:
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "audio"
    return "document"


def folder_for_type(file_type: str) -> str:
    return FOLDERS.get(file_type, "files")


def sanitize_file_name(file_name: str) -> str:
    """`my report (1).pdf` -> `my_report__1_.pdf`"""
    base, ext = os.path.splitext(os.path.basename(file_name))
    return re.sub(r"[^a-zA-Z0-9]", "_", base) + ext


def display_name(username: Optional[str], email: Optional[str], fallback: str = "User") -> str:
    """Username, else the local part of the email, else `fallback`."""
    if username:
        return username
    if email:
        return email.split("@")[0]
    return fallback


def strip_data_uri(photo: Optional[str]) -> Optional[str]:
    if not photo:
        return None
    return _DATA_URI_PREFIX.sub("", photo)


def as_data_uri(photo: Optional[str]) -> Optional[str]:
    if not photo:
        return None
    if photo.startswith("data:"):
        return photo
    return f"data:image/jpeg;base64,{photo}"


def message_preview(text: Optional[str], file_name: Optional[str] = None, limit: int = 100) -> str:
    if text:
        return text[:limit]
    if file_name:
        return file_name[:limit]
    return "Sent a message"
