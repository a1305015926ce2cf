import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from codedrop.config import (
    CODE_EXPIRY_MINUTES,
    CODE_MAX_ATTEMPTS,
    DOWNLOAD_EXPIRY_MINUTES,
    MAX_CODE_EXPIRY_MINUTES,
    MAX_UPLOAD_BYTES,
)
from codedrop.exceptions import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from codedrop.models.shared_file import FileStatus
from codedrop.services import tokens
from codedrop.services.code_allocator import CodeAllocator, utc_now
from codedrop.services.content_cipher import ContentCipher
from codedrop.storage.base import FileRecord

logger = logging.getLogger(__name__)

WAITING = FileStatus.WAITING_FOR_DOWNLOAD.value
DOWNLOADED = FileStatus.DOWNLOADED.value


@dataclass(frozen=True)
class DownloadGrant:
    token: str
    url: str
    expires_at: datetime


class FileLifecycleManager:
    """Owns a shared file from upload to its single download."""

    def __init__(
        self, storage, cipher=None, now=utc_now, allocator=None,
        max_bytes: int = MAX_UPLOAD_BYTES,
        max_attempts: int = CODE_MAX_ATTEMPTS,
    ):
        self.storage = storage
        self.cipher = cipher or ContentCipher()
        self.now = now
        self.allocator = allocator or CodeAllocator(storage, now=now, max_attempts=max_attempts)
        self.max_bytes = max_bytes
        self.max_attempts = max_attempts

    def _expiry_minutes(self, requested):
        # Non-positive or missing values fall back to the default
        if requested is None or requested <= 0:
            return CODE_EXPIRY_MINUTES
        if requested > MAX_CODE_EXPIRY_MINUTES:
            raise ValidationError(
                f"Expiry cannot exceed {MAX_CODE_EXPIRY_MINUTES} minutes"
            )
        return requested

    def create_file(
        self, *, owner_id: str, name: str, size: int, content_type: str, data: bytes,
        expiry_minutes: int | None = None
    ) -> FileRecord:
        if not name:
            raise ValidationError("File name is required")
        if not data:
            raise ValidationError("File is empty")
        if size != len(data):
            raise ValidationError("Declared size does not match the content")
        if size > self.max_bytes:
            raise ValidationError(
                f"File too large. Maximum allowed size is {self.max_bytes} bytes."
            )
        lifetime = timedelta(minutes=self._expiry_minutes(expiry_minutes))

        salt, content = self.cipher.encrypt(data)

        for _ in range(self.max_attempts):  # retry when a concurrent upload took the code
            code = self.allocator.allocate()
            now = self.now()
            self.storage.release_connection_code(code, now)
            try:
                record = self.storage.create_file(
                    name=name,
                    size=size,
                    content_type=content_type or "application/octet-stream",
                    content=content,
                    content_salt=salt,
                    user_id=owner_id,
                    connection_code=code,
                    status=WAITING,
                    expires_at=now + lifetime,
                )
            except ConflictError:
                logger.info("Connection code taken concurrently, drawing another")
                continue
            logger.info("Stored file %d (%d bytes) for user %s", record.id, size, owner_id)
            return record
        raise StorageError("Failed to store file under a unique connection code")

    def resolve_code(self, code, requesting_user_id=None) -> FileRecord:
        """Return the live file behind ``code``.

        Unknown, expired, already downloaded and self-owned files all raise
        the same ``NotFoundError``.
        """
        if not code:
            raise ValidationError("Invalid code format")
        record = self.storage.get_file_by_connection_code(code)
        if record is None or not record.is_active(self.now()):
            raise NotFoundError("Invalid connection code")
        if requesting_user_id is not None and record.user_id == requesting_user_id:
            raise NotFoundError("Invalid connection code")
        return record

    def issue_download_token(self, file_id) -> DownloadGrant:
        token = tokens.new_download_token()
        url = f"/files/download/{token}"
        expires_at = self.now() + timedelta(minutes=DOWNLOAD_EXPIRY_MINUTES)
        self.storage.set_download_token(file_id, tokens.digest(token), url, expires_at)
        return DownloadGrant(token=token, url=url, expires_at=expires_at)

    def redeem_token(self, token, user_id=None):
        """Consume ``token`` and return the file record with its plaintext.

        The content is decrypted before the status flips, so a file that
        cannot be decrypted stays waiting.
        """
        record = self.storage.get_file_by_download_token(tokens.digest(token))
        if record is None or record.status != WAITING:
            raise NotFoundError("File not found or already downloaded")
        if record.download_expires_at is None or self.now() >= record.download_expires_at:
            raise ExpiredError()
        content = self.read_content(record)
        # Only the caller that wins the status flip may serve the content
        if not self.storage.set_status(
            record.id, DOWNLOADED, expected=WAITING, downloaded_by=user_id
        ):
            raise NotFoundError("File not found or already downloaded")
        logger.info("File %d redeemed", record.id)
        return replace(record, status=DOWNLOADED, downloaded_by=user_id), content

    def mark_downloaded(self, file_id, user_id=None) -> bool:
        changed = self.storage.set_status(
            file_id, DOWNLOADED, expected=WAITING, downloaded_by=user_id
        )
        if changed:
            logger.info("File %d marked as downloaded", file_id)
        return changed

    def mark_downloaded_by_code(self, code, user_id=None):
        record = self.resolve_code(code, user_id)
        if not self.mark_downloaded(record.id, user_id):
            raise NotFoundError("Invalid connection code")
        return replace(record, status=DOWNLOADED, downloaded_by=user_id)

    def read_content(self, record):
        return self.cipher.decrypt(record.content_salt, record.content)
