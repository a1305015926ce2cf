import hashlib
import secrets

from codedrop.services.code_allocator import ALPHABET

# 22 characters over 62 symbols carry just over 128 bits
TOKEN_LENGTH = 22


def new_download_token(length=TOKEN_LENGTH):
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def digest(token):
    """Form of a download token that is safe to persist and look up by."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
