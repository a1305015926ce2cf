import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, LargeBinary, DateTime, ForeignKey
from codedrop.database import Base


class FileStatus(str, enum.Enum):
    WAITING_FOR_DOWNLOAD = "WAITING_FOR_DOWNLOAD"
    DOWNLOADED = "DOWNLOADED"


class SharedFile(Base):
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    size = Column(Integer, nullable=False)
    content_type = Column(String(255), nullable=False)
    # Fernet token of the uploaded bytes, key derived from content_salt
    content = Column(LargeBinary, nullable=False)
    content_salt = Column(LargeBinary, nullable=False)
    user_id = Column(String(255), ForeignKey("users.id"), index=True, nullable=False)
    # Cleared when a stale row gives its code back to the pool
    connection_code = Column(String(32), unique=True, index=True, nullable=True)
    status = Column(
        String(32),
        default=FileStatus.WAITING_FOR_DOWNLOAD.value,
        index=True,
        nullable=False,
    )
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)
    download_token = Column(String(64), unique=True, index=True, nullable=True)
    download_url = Column(String(255), nullable=True)
    download_expires_at = Column(DateTime(timezone=True), nullable=True)
    # Recipient that took the file, when the caller was signed in
    downloaded_by = Column(String(255), ForeignKey("users.id"), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
