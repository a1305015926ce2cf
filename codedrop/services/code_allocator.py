import logging
import secrets
import string
from datetime import datetime, timezone

from codedrop.config import CODE_MAX_ATTEMPTS
from codedrop.exceptions import StorageError

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def code_length(active_codes: int) -> int:
    """Smallest length whose 1% share of the code space exceeds ``active_codes``.

    A length of one allows ``62 // 100 == 0`` codes, so an idle system still
    hands out two-character codes.
    """
    length = 1
    while active_codes >= len(ALPHABET) ** length // 100:
        length += 1
    return length


class CodeAllocator:
    def __init__(self, storage, now=utc_now, max_attempts=CODE_MAX_ATTEMPTS):
        self.storage = storage
        self.now = now
        self.max_attempts = max_attempts

    def random_code(self, length):
        return "".join(secrets.choice(ALPHABET) for _ in range(length))

    def allocate(self) -> str:
        now = self.now()
        length = code_length(self.storage.count_active_files(now))

        for _ in range(self.max_attempts):
            code = self.random_code(length)
            holder = self.storage.get_file_by_connection_code(code)
            if holder is None or not holder.is_active(now):
                return code
        logger.error(
            "No free connection code of length %d after %d draws", length, self.max_attempts
        )
        raise StorageError("Failed to allocate a unique connection code")
