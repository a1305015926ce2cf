import logging
from datetime import datetime, timedelta, timezone
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session
from .config import ATTEMPT_RETENTION_HOURS, CLEANUP_BATCH_SIZE
from .database import SessionLocal
from .models import FailedAttempt, FileStatus, SharedFile
from . import celery_app

logger = logging.getLogger(__name__)


def _delete_in_batches(db: Session, model, condition, batch_size: int) -> int:
    # Delete in batches to avoid long locks; loop until a short batch
    total = 0
    while True:
        ids = select(model.id).where(condition).limit(batch_size)
        res = db.execute(
            delete(model)
            .where(model.id.in_(ids.scalar_subquery()))
            .execution_options(synchronize_session=False)
        )
        db.commit()
        deleted = res.rowcount or 0
        total += deleted
        if deleted < batch_size:
            return total


def purge_stale_rows(db: Session, now: datetime, batch_size: int = CLEANUP_BATCH_SIZE) -> dict:
    """Drop rows that no request can use any more.

    Reads already treat these rows as absent, so this only reclaims space.
    """
    finished_files = or_(
        SharedFile.status == FileStatus.DOWNLOADED.value,
        and_(
            SharedFile.expires_at <= now,
            or_(
                SharedFile.download_expires_at.is_(None),
                SharedFile.download_expires_at <= now,
            ),
        ),
    )
    idle_attempts = and_(
        or_(FailedAttempt.timeout_until.is_(None), FailedAttempt.timeout_until <= now),
        FailedAttempt.last_attempt_at <= now - timedelta(hours=ATTEMPT_RETENTION_HOURS),
    )
    files = _delete_in_batches(db, SharedFile, finished_files, batch_size)
    attempts = _delete_in_batches(db, FailedAttempt, idle_attempts, batch_size)
    logger.info("Purged %d files and %d failed-attempt records", files, attempts)
    return {"files": files, "failed_attempts": attempts}


@celery_app.task(name="codedrop.cleanup.purge_stale")
def purge_stale():
    db = SessionLocal()
    try:
        return purge_stale_rows(db, datetime.now(timezone.utc))
    finally:
        db.close()
