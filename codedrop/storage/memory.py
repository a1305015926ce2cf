import threading
from dataclasses import replace
from datetime import datetime, timezone

from codedrop.exceptions import ConflictError
from codedrop.storage.base import FailedAttemptRecord, FileRecord, Storage, UserRecord


class MemoryStorage(Storage):
    """Process-local store.

    Records are immutable dataclasses, so handing them out never exposes
    internal state. Every read-modify-write runs under one lock, which makes
    the conditional updates atomic across request threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._users: dict[str, UserRecord] = {}
        self._files: dict[int, FileRecord] = {}
        self._attempts: dict[str, FailedAttemptRecord] = {}
        self._next_file_id = 1

    def get_user_by_id(self, user_id):
        return self._users.get(user_id)

    def get_user_by_email(self, email):
        with self._lock:
            return next((u for u in self._users.values() if u.email == email), None)

    def create_user(self, *, id, name, email, picture=None):
        with self._lock:
            if id in self._users or any(u.email == email for u in self._users.values()):
                raise ConflictError("User already exists")
            user = UserRecord(
                id=id, name=name, email=email, picture=picture,
                created_at=datetime.now(timezone.utc),
            )
            self._users[id] = user
            return user

    def create_file(
        self, *, name, size, content_type, content, content_salt, user_id,
        connection_code, status, expires_at
    ):
        with self._lock:
            if any(f.connection_code == connection_code for f in self._files.values()):
                raise ConflictError()
            record = FileRecord(
                id=self._next_file_id,
                name=name,
                size=size,
                content_type=content_type,
                content=content,
                content_salt=content_salt,
                user_id=user_id,
                connection_code=connection_code,
                status=status,
                expires_at=expires_at,
                created_at=datetime.now(timezone.utc),
            )
            self._files[record.id] = record
            self._next_file_id += 1
            return record

    def get_file_by_id(self, file_id):
        return self._files.get(file_id)

    def get_file_by_connection_code(self, code):
        with self._lock:
            return next(
                (f for f in self._files.values() if f.connection_code == code), None
            )

    def get_file_by_download_token(self, token_digest):
        with self._lock:
            return next(
                (f for f in self._files.values() if f.download_token == token_digest),
                None,
            )

    def count_active_files(self, now):
        with self._lock:
            return sum(1 for f in self._files.values() if f.is_active(now))

    def release_connection_code(self, code, now):
        released = 0
        with self._lock:
            for f in list(self._files.values()):
                if f.connection_code == code and not f.is_active(now):
                    self._files[f.id] = replace(f, connection_code=None)
                    released += 1
        return released

    def set_download_token(self, file_id, token_digest, url, expires_at):
        with self._lock:
            f = self._files.get(file_id)
            if f is None:
                return
            if any(
                other.download_token == token_digest
                for other in self._files.values()
                if other.id != file_id
            ):
                raise ConflictError()
            self._files[file_id] = replace(
                f, download_token=token_digest, download_url=url,
                download_expires_at=expires_at,
            )

    def set_status(self, file_id, status, expected=None, downloaded_by=None):
        with self._lock:
            f = self._files.get(file_id)
            if f is None or (expected is not None and f.status != expected):
                return False
            changes = {"status": status}
            if downloaded_by is not None:
                changes["downloaded_by"] = downloaded_by
            self._files[file_id] = replace(f, **changes)
            return True

    def get_failed_attempt(self, ip):
        return self._attempts.get(ip)

    def create_failed_attempt(self, ip, attempts, last_attempt_at):
        with self._lock:
            if ip in self._attempts:
                raise ConflictError()
            record = FailedAttemptRecord(
                ip=ip, attempts=attempts, last_attempt_at=last_attempt_at
            )
            self._attempts[ip] = record
            return record

    def update_failed_attempts(self, ip, attempts, last_attempt_at):
        with self._lock:
            record = self._attempts.get(ip)
            if record is None:
                record = FailedAttemptRecord(
                    ip=ip, attempts=attempts, last_attempt_at=last_attempt_at
                )
            else:
                record = replace(
                    record, attempts=attempts, last_attempt_at=last_attempt_at
                )
            self._attempts[ip] = record
            return record

    def increment_failed_attempts(self, ip, last_attempt_at):
        with self._lock:
            record = self._attempts.get(ip)
            if record is None:
                record = FailedAttemptRecord(
                    ip=ip, attempts=1, last_attempt_at=last_attempt_at
                )
            else:
                record = replace(
                    record, attempts=record.attempts + 1,
                    last_attempt_at=last_attempt_at,
                )
            self._attempts[ip] = record
            return record

    def restart_failed_attempts(self, ip, now):
        with self._lock:
            record = self._attempts.get(ip)
            if record is None or record.timeout_until is None or record.timeout_until > now:
                return None
            record = replace(record, attempts=1, last_attempt_at=now, timeout_until=None)
            self._attempts[ip] = record
            return record

    def set_failed_attempt_timeout(self, ip, timeout_until, timeout_duration, now):
        with self._lock:
            record = self._attempts.get(ip)
            if record is None:
                return False
            if record.timeout_until is not None and record.timeout_until > now:
                return False
            self._attempts[ip] = replace(
                record, timeout_until=timeout_until,
                timeout_duration=timeout_duration,
            )
            return True

    def reset_failed_attempts(self, ip):
        with self._lock:
            record = self._attempts.get(ip)
            if record is not None:
                self._attempts[ip] = replace(record, attempts=0, timeout_until=None)
