from codedrop.models.failed_attempt import FailedAttempt
from codedrop.models.shared_file import FileStatus, SharedFile
from codedrop.models.user import User

__all__ = ["FailedAttempt", "FileStatus", "SharedFile", "User"]
