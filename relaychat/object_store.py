"""
Attachment storage on Cloudinary.

Objects are uploaded as private resources; clients only ever get
time-limited signed download URLs. The storage path handed back to
callers is the Cloudinary public id, whose first segment is the folder
and decides the resource type.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import cloudinary
import cloudinary.uploader
import cloudinary.utils
from fastapi.concurrency import run_in_threadpool

from relaychat.errors import DependencyFailed
from relaychat.utils import sanitize_file_name

logger = logging.getLogger(__name__)

DELIVERY_TYPE = "private"


@dataclass
class StoredObject:
    url: str
    path: str


def resource_type_for_path(path: str) -> str:
    folder = path.split("/", 1)[0]
    if folder == "images":
        return "image"
    # Cloudinary stores audio as video resources
    if folder in ("videos", "audio"):
        return "video"
    return "raw"


class CloudinaryObjectStore:
    def __init__(self, cloud_name: Optional[str], api_key: Optional[str], api_secret: Optional[str],
                 signed_url_days: int = 7):
        self.signed_url_days = signed_url_days
        self.configured = bool(cloud_name and api_key and api_secret)
        if self.configured:
            cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)
        else:
            logger.info("Cloudinary credentials not set, uploads disabled")

    async def put(self, data: bytes, file_name: str, mime_type: str, folder: str, owner) -> StoredObject:
        """
        Upload bytes under `<folder>/<owner>/<timestamp>_<name>`.

        Raises:
            DependencyFailed: storage not configured or upload failed
        """
        if not self.configured:
            raise DependencyFailed("File storage is not configured")

        base, ext = os.path.splitext(sanitize_file_name(file_name))
        resource_type = resource_type_for_path(folder)
        # Raw resources keep their extension in the public id
        public_id = f"{folder}/{owner}/{int(time.time() * 1000)}_{base}"
        if resource_type == "raw":
            public_id += ext

        try:
            result = await run_in_threadpool(
                cloudinary.uploader.upload,
                data,
                public_id=public_id,
                resource_type=resource_type,
                type=DELIVERY_TYPE,
                context={"original_name": file_name, "uploaded_by": str(owner), "mime_type": mime_type},
            )
        except Exception as e:
            logger.error(f"Upload to object storage failed: {e}")
            raise DependencyFailed("Failed to upload file to storage") from e

        path = result.get("public_id", public_id)
        url = self._signed_url(path, result.get("format") or ext.lstrip("."))
        logger.info(f"File uploaded to object storage: {path}")
        return StoredObject(url=url, path=path)

    async def delete(self, path: str) -> bool:
        if not self.configured:
            return False
        try:
            result = await run_in_threadpool(
                cloudinary.uploader.destroy,
                path,
                resource_type=resource_type_for_path(path),
                type=DELIVERY_TYPE,
                invalidate=True,
            )
        except Exception as e:
            logger.error(f"Object storage delete failed for {path}: {e}")
            return False
        deleted = result.get("result") == "ok"
        if deleted:
            logger.info(f"File deleted from object storage: {path}")
        else:
            logger.warning(f"Object storage did not delete {path}: {result.get('result')}")
        return deleted

    async def signed_url(self, path: str, file_name: str = "", expiry_days: Optional[int] = None) -> str:
        if not self.configured:
            raise DependencyFailed("File storage is not configured")
        file_format = "" if resource_type_for_path(path) == "raw" else os.path.splitext(file_name)[1].lstrip(".")
        return self._signed_url(path, file_format, expiry_days)

    def _signed_url(self, path: str, file_format: str, expiry_days: Optional[int] = None) -> str:
        days = expiry_days if expiry_days is not None else self.signed_url_days
        if resource_type_for_path(path) == "raw":
            file_format = ""
        return cloudinary.utils.private_download_url(
            path,
            file_format,
            resource_type=resource_type_for_path(path),
            type=DELIVERY_TYPE,
            expires_at=int(time.time()) + days * 24 * 60 * 60,
        )
