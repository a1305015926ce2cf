from functools import lru_cache

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from codedrop.database import get_db
from codedrop.services.attempt_throttler import AttemptThrottler
from codedrop.services.content_cipher import ContentCipher
from codedrop.services.file_lifecycle import FileLifecycleManager
from codedrop.storage.base import Storage, UserRecord
from codedrop.storage.sql import SqlStorage


def get_storage(db: Session = Depends(get_db)) -> Storage:
    return SqlStorage(db)


@lru_cache
def get_cipher() -> ContentCipher:
    return ContentCipher()


def get_lifecycle(
    storage: Storage = Depends(get_storage),
    cipher: ContentCipher = Depends(get_cipher),
) -> FileLifecycleManager:
    return FileLifecycleManager(storage, cipher=cipher)


def get_throttler(storage: Storage = Depends(get_storage)) -> AttemptThrottler:
    return AttemptThrottler(storage)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_optional_user(
    x_user_id: str | None = Header(default=None),
    storage: Storage = Depends(get_storage),
) -> UserRecord | None:
    """Resolve the caller from the identity header set by the auth gateway."""
    if not x_user_id:
        return None
    return storage.get_user_by_id(x_user_id)


def get_current_user(user: UserRecord | None = Depends(get_optional_user)) -> UserRecord:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user
