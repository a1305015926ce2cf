import logging

from codedrop.exceptions import ConflictError, ValidationError
from codedrop.storage.base import UserRecord

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, storage):
        self.storage = storage

    def register(
        self, *, id: str, name: str, email: str, picture: str | None = None
    ) -> UserRecord:
        """Return the user with ``id``, creating it from the verified profile."""
        existing = self.storage.get_user_by_id(id)
        if existing is not None:
            return existing
        owner = self.storage.get_user_by_email(email)
        if owner is not None:
            raise ValidationError("Email is already registered to another account")
        try:
            user = self.storage.create_user(id=id, name=name, email=email, picture=picture)
        except ConflictError:
            # Concurrent registration of the same profile
            existing = self.storage.get_user_by_id(id)
            if existing is None:
                raise
            return existing
        logger.info("Registered user %s", id)
        return user
