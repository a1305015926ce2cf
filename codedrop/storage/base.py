from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from codedrop.models.shared_file import FileStatus


@dataclass(frozen=True)
class UserRecord:
    id: str
    name: str
    email: str
    picture: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class FileRecord:
    id: int
    name: str
    size: int
    content_type: str
    content: bytes
    content_salt: bytes
    user_id: str
    connection_code: str | None
    status: str
    expires_at: datetime
    download_token: str | None = None
    download_url: str | None = None
    download_expires_at: datetime | None = None
    downloaded_by: str | None = None
    created_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        """Waiting for its recipient and the connection code still valid."""
        return (
            self.status == FileStatus.WAITING_FOR_DOWNLOAD.value
            and now < self.expires_at
        )


@dataclass(frozen=True)
class FailedAttemptRecord:
    ip: str
    attempts: int
    last_attempt_at: datetime
    timeout_until: datetime | None = None
    timeout_duration: int = 0


class Storage(ABC):
    """Persistence port for users, shared files and failed attempts.

    Lookups return ``None`` when nothing matches. Implementations raise
    ``StorageError`` on backend failures and ``ConflictError`` when a
    unique key (connection code, IP) is already held by another row.
    """

    # Users

    @abstractmethod
    def get_user_by_id(self, user_id: str) -> UserRecord | None: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> UserRecord | None: ...

    @abstractmethod
    def create_user(
        self, *, id: str, name: str, email: str, picture: str | None = None
    ) -> UserRecord: ...

    # Files

    @abstractmethod
    def create_file(
        self, *, name: str, size: int, content_type: str, content: bytes,
        content_salt: bytes, user_id: str, connection_code: str,
        status: str, expires_at: datetime
    ) -> FileRecord: ...

    @abstractmethod
    def get_file_by_id(self, file_id: int) -> FileRecord | None: ...

    @abstractmethod
    def get_file_by_connection_code(self, code: str) -> FileRecord | None: ...

    @abstractmethod
    def get_file_by_download_token(self, token_digest: str) -> FileRecord | None: ...

    @abstractmethod
    def count_active_files(self, now: datetime) -> int: ...

    @abstractmethod
    def release_connection_code(self, code: str, now: datetime) -> int:
        """Detach ``code`` from rows that are no longer active.

        Returns the number of rows that gave the code up.
        """

    @abstractmethod
    def set_download_token(
        self, file_id: int, token_digest: str, url: str, expires_at: datetime
    ) -> None: ...

    @abstractmethod
    def set_status(
        self, file_id: int, status: str, expected: str | None = None,
        downloaded_by: str | None = None
    ) -> bool:
        """Set the file status, optionally only if it currently is ``expected``.

        ``downloaded_by`` is written together with the status. Returns True if
        a row was updated.
        """

    # Failed attempts

    @abstractmethod
    def get_failed_attempt(self, ip: str) -> FailedAttemptRecord | None: ...

    @abstractmethod
    def create_failed_attempt(
        self, ip: str, attempts: int, last_attempt_at: datetime
    ) -> FailedAttemptRecord: ...

    @abstractmethod
    def update_failed_attempts(
        self, ip: str, attempts: int, last_attempt_at: datetime
    ) -> FailedAttemptRecord: ...

    @abstractmethod
    def increment_failed_attempts(
        self, ip: str, last_attempt_at: datetime
    ) -> FailedAttemptRecord:
        """Atomically add one to the attempt counter of ``ip``."""

    @abstractmethod
    def restart_failed_attempts(
        self, ip: str, now: datetime
    ) -> FailedAttemptRecord | None:
        """Start counting at one again once a lockout has run out.

        Only applies when ``ip`` holds a lockout that ended at or before
        ``now``; returns None when no row matched.
        """

    @abstractmethod
    def set_failed_attempt_timeout(
        self, ip: str, timeout_until: datetime, timeout_duration: int, now: datetime
    ) -> bool:
        """Lock ``ip`` unless a lockout is already running at ``now``.

        Returns True if this call placed the lockout.
        """

    @abstractmethod
    def reset_failed_attempts(self, ip: str) -> None:
        """Zero the counter and lift any lockout, keeping the last duration."""
