"""
Garbage-collect uploaded documents no message cites any more.

A document qualifies once its reference count is zero and it is older
than the retention window. The row is claimed first with a delete that
only matches while nothing cites it, then the object goes. An object that
cannot be deleted is left behind as a stray and reported.

Usage:
    python -m relaychat.cleanup [--days N]
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List

from sqlalchemy.orm import Session

from relaychat.config import settings
from relaychat.logging_utils import setup_logging
from relaychat.object_store import CloudinaryObjectStore
from relaychat.storage import SessionLocal, delete_document, find_orphaned_documents, init_db

logger = logging.getLogger(__name__)


@dataclass
class CleanupSummary:
    found: int = 0
    deleted: int = 0
    failed: int = 0
    failed_paths: List[str] = field(default_factory=list)


async def cleanup_orphaned_documents(db: Session, object_store, days_old: int) -> CleanupSummary:
    summary = CleanupSummary()
    orphans = find_orphaned_documents(db, days_old=days_old)
    summary.found = len(orphans)
    logger.info(f"Found {summary.found} orphaned document(s) older than {days_old} days")

    # Row attributes expire once the row is claimed
    candidates = [(document.document_id, document.file_path) for document in orphans]

    for document_id, file_path in candidates:
        if not delete_document(db, document_id):
            logger.info(f"Document {document_id} is cited again, skipped")
            continue
        if await object_store.delete(file_path):
            summary.deleted += 1
        else:
            summary.failed += 1
            summary.failed_paths.append(file_path)
            logger.warning(f"Stray object left in storage: {file_path}")

    logger.info(
        "Orphan cleanup finished",
        extra={"found": summary.found, "deleted": summary.deleted, "failed": summary.failed},
    )
    return summary


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete orphaned uploaded documents")
    parser.add_argument("--days", type=int, default=settings.DOCUMENT_RETENTION_DAYS,
                        help="Minimum age in days of an unreferenced document")
    args = parser.parse_args(argv)

    setup_logging(settings.LOG_LEVEL)
    init_db()

    store = CloudinaryObjectStore(
        settings.CLOUDINARY_CLOUD_NAME,
        settings.CLOUDINARY_API_KEY,
        settings.CLOUDINARY_API_SECRET,
    )
    with SessionLocal() as db:
        summary = asyncio.run(cleanup_orphaned_documents(db, store, args.days))
    return 1 if summary.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
