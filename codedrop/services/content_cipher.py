# codedrop/services/content_cipher.py
import base64
import logging
import os
import secrets
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from codedrop.config import CONTENT_KDF_ITERATIONS, CONTENT_SECRET
from codedrop.exceptions import StorageError

logger = logging.getLogger(__name__)

_process_secret: str | None = None


def _default_secret() -> str:
    global _process_secret
    if CONTENT_SECRET:
        return CONTENT_SECRET
    if _process_secret is None:
        logger.warning(
            "CONTENT_SECRET is not set; using a per-process secret. "
            "Stored files become unreadable after a restart."
        )
        _process_secret = secrets.token_urlsafe(32)
    return _process_secret


class ContentCipher:
    """Encrypts file content at rest with a Fernet key derived per file."""

    def __init__(self, secret: str | None = None, iterations: int = CONTENT_KDF_ITERATIONS):
        self.secret = bytes(secret or _default_secret(), "utf-8")
        self.iterations = iterations

    def derive_key(self, salt):
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(self.secret))

    def encrypt(self, data: bytes) -> tuple[bytes, bytes]:
        """Return ``(salt, ciphertext)`` for ``data``."""
        salt = os.urandom(16)
        return salt, Fernet(self.derive_key(salt)).encrypt(data)

    def decrypt(self, salt: bytes, data: bytes) -> bytes:
        try:
            return Fernet(self.derive_key(salt)).decrypt(data)
        except InvalidToken as exc:
            logger.error("Stored content could not be decrypted")
            raise StorageError() from exc
