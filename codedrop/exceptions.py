"""Error taxonomy shared by the storage layer, the services and the routers."""


class CodeDropError(Exception):
    """Base class for all CodeDrop errors."""

    message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class NotFoundError(CodeDropError):
    """No such code, token or file.

    Also raised for conditions that must look the same to the caller, such as
    an expired code or an uploader trying to fetch their own file.
    """

    message = "Not found"


class ExpiredError(CodeDropError):
    """A download token existed but its deadline has passed."""

    message = "Download link has expired"


class RateLimitedError(CodeDropError):
    message = "Too many incorrect attempts. Please try again later."

    def __init__(self, timeout_seconds: int, message: str | None = None):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class ValidationError(CodeDropError):
    message = "Invalid input"


class StorageError(CodeDropError):
    """Persistence failure. Details are logged, never returned to clients."""

    message = "Storage failure"


class ConflictError(StorageError):
    """A unique key (connection code, token, IP) is already held by another row."""

    message = "Conflicting record"
