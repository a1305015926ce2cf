import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from codedrop.exceptions import ConflictError, StorageError
from codedrop.models import FailedAttempt, FileStatus, SharedFile, User
from codedrop.storage.base import FailedAttemptRecord, FileRecord, Storage, UserRecord

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _user_record(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        name=row.name,
        email=row.email,
        picture=row.picture,
        created_at=_as_utc(row.created_at),
    )


def _file_record(row: SharedFile) -> FileRecord:
    return FileRecord(
        id=row.id,
        name=row.name,
        size=row.size,
        content_type=row.content_type,
        content=row.content,
        content_salt=row.content_salt,
        user_id=row.user_id,
        connection_code=row.connection_code,
        status=row.status,
        expires_at=_as_utc(row.expires_at),
        download_token=row.download_token,
        download_url=row.download_url,
        download_expires_at=_as_utc(row.download_expires_at),
        downloaded_by=row.downloaded_by,
        created_at=_as_utc(row.created_at),
    )


def _attempt_record(row: FailedAttempt) -> FailedAttemptRecord:
    return FailedAttemptRecord(
        ip=row.ip,
        attempts=row.attempts,
        last_attempt_at=_as_utc(row.last_attempt_at),
        timeout_until=_as_utc(row.timeout_until),
        timeout_duration=row.timeout_duration or 0,
    )


class SqlStorage(Storage):
    """Store backed by a SQLAlchemy session.

    Every write is committed on its own. Conditional updates are single
    ``UPDATE ... WHERE`` statements so the database serializes them.
    """

    def __init__(self, db_session: Session):
        self.db_session = db_session

    @contextmanager
    def _guard(self):
        try:
            yield
        except IntegrityError as exc:
            self.db_session.rollback()
            raise ConflictError() from exc
        except SQLAlchemyError as exc:
            self.db_session.rollback()
            logger.exception("Database operation failed")
            raise StorageError() from exc

    def _add(self, row):
        with self._guard():
            self.db_session.add(row)
            self.db_session.commit()
            self.db_session.refresh(row)
        return row

    def _first(self, stmt):
        with self._guard():
            return self.db_session.execute(stmt).scalars().first()

    def _execute(self, stmt) -> int:
        with self._guard():
            result = self.db_session.execute(stmt)
            self.db_session.commit()
        return result.rowcount or 0

    # Users

    def get_user_by_id(self, user_id):
        row = self._first(select(User).where(User.id == user_id))
        return _user_record(row) if row else None

    def get_user_by_email(self, email):
        row = self._first(select(User).where(User.email == email))
        return _user_record(row) if row else None

    def create_user(self, *, id, name, email, picture=None):
        return _user_record(self._add(User(id=id, name=name, email=email, picture=picture)))

    # Files

    def create_file(
        self, *, name, size, content_type, content, content_salt, user_id,
        connection_code, status, expires_at
    ):
        row = SharedFile(
            name=name,
            size=size,
            content_type=content_type,
            content=content,
            content_salt=content_salt,
            user_id=user_id,
            connection_code=connection_code,
            status=status,
            expires_at=expires_at,
        )
        return _file_record(self._add(row))

    def get_file_by_id(self, file_id):
        row = self._first(select(SharedFile).where(SharedFile.id == file_id))
        return _file_record(row) if row else None

    def get_file_by_connection_code(self, code):
        row = self._first(select(SharedFile).where(SharedFile.connection_code == code))
        return _file_record(row) if row else None

    def get_file_by_download_token(self, token_digest):
        row = self._first(
            select(SharedFile).where(SharedFile.download_token == token_digest)
        )
        return _file_record(row) if row else None

    def count_active_files(self, now):
        stmt = (
            select(func.count())
            .select_from(SharedFile)
            .where(
                SharedFile.status == FileStatus.WAITING_FOR_DOWNLOAD.value,
                SharedFile.expires_at > now,
            )
        )
        with self._guard():
            return self.db_session.execute(stmt).scalar_one()

    def release_connection_code(self, code, now):
        stmt = (
            update(SharedFile)
            .where(
                SharedFile.connection_code == code,
                or_(
                    SharedFile.status != FileStatus.WAITING_FOR_DOWNLOAD.value,
                    SharedFile.expires_at <= now,
                ),
            )
            .values(connection_code=None)
            .execution_options(synchronize_session=False)
        )
        return self._execute(stmt)

    def set_download_token(self, file_id, token_digest, url, expires_at):
        stmt = (
            update(SharedFile)
            .where(SharedFile.id == file_id)
            .values(
                download_token=token_digest,
                download_url=url,
                download_expires_at=expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        self._execute(stmt)

    def set_status(self, file_id, status, expected=None, downloaded_by=None):
        stmt = update(SharedFile).where(SharedFile.id == file_id)
        if expected is not None:
            stmt = stmt.where(SharedFile.status == expected)
        values = {"status": status}
        if downloaded_by is not None:
            values["downloaded_by"] = downloaded_by
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        return self._execute(stmt) > 0

    # Failed attempts

    def _attempt_row(self, ip):
        return self._first(select(FailedAttempt).where(FailedAttempt.ip == ip))

    def _refreshed_attempt(self, ip) -> FailedAttemptRecord:
        # Updates bypass the identity map, so re-read the row
        self.db_session.expire_all()
        row = self._attempt_row(ip)
        if row is None:
            raise StorageError(f"Failed-attempt record vanished for {ip}")
        return _attempt_record(row)

    def get_failed_attempt(self, ip):
        self.db_session.expire_all()
        row = self._attempt_row(ip)
        return _attempt_record(row) if row else None

    def create_failed_attempt(self, ip, attempts, last_attempt_at):
        row = FailedAttempt(
            ip=ip,
            attempts=attempts,
            last_attempt_at=last_attempt_at,
            timeout_duration=0,
        )
        return _attempt_record(self._add(row))

    def update_failed_attempts(self, ip, attempts, last_attempt_at):
        updated = self._execute(
            update(FailedAttempt)
            .where(FailedAttempt.ip == ip)
            .values(attempts=attempts, last_attempt_at=last_attempt_at)
            .execution_options(synchronize_session=False)
        )
        if not updated:
            return self.create_failed_attempt(ip, attempts, last_attempt_at)
        return self._refreshed_attempt(ip)

    def increment_failed_attempts(self, ip, last_attempt_at):
        updated = self._execute(
            update(FailedAttempt)
            .where(FailedAttempt.ip == ip)
            .values(
                attempts=FailedAttempt.attempts + 1,
                last_attempt_at=last_attempt_at,
            )
            .execution_options(synchronize_session=False)
        )
        if not updated:
            return self.create_failed_attempt(ip, 1, last_attempt_at)
        return self._refreshed_attempt(ip)

    def restart_failed_attempts(self, ip, now):
        updated = self._execute(
            update(FailedAttempt)
            .where(
                FailedAttempt.ip == ip,
                FailedAttempt.timeout_until.is_not(None),
                FailedAttempt.timeout_until <= now,
            )
            .values(attempts=1, last_attempt_at=now, timeout_until=None)
            .execution_options(synchronize_session=False)
        )
        if not updated:
            return None
        return self._refreshed_attempt(ip)

    def set_failed_attempt_timeout(self, ip, timeout_until, timeout_duration, now):
        updated = self._execute(
            update(FailedAttempt)
            .where(
                FailedAttempt.ip == ip,
                or_(
                    FailedAttempt.timeout_until.is_(None),
                    FailedAttempt.timeout_until <= now,
                ),
            )
            .values(timeout_until=timeout_until, timeout_duration=timeout_duration)
            .execution_options(synchronize_session=False)
        )
        return updated > 0

    def reset_failed_attempts(self, ip):
        self._execute(
            update(FailedAttempt)
            .where(FailedAttempt.ip == ip)
            .values(attempts=0, timeout_until=None)
            .execution_options(synchronize_session=False)
        )
