"""Error taxonomy shared by the core services and the HTTP adapter.

Every error carries a stable ``code``, the HTTP ``status`` the adapter
answers with, and a ``public_message`` that is safe to show to clients.
Link resolution failures and credential failures share one public message
per family so that responses do not reveal whether a token or username
exists.
"""

from typing import Optional

LINK_UNAVAILABLE_MESSAGE = "This upload link is not available."
INVALID_CREDENTIALS_MESSAGE = "Invalid username or password."
INTERNAL_ERROR_MESSAGE = "Internal error. Please try again later."


class NeedADropError(Exception):
    code = "error"
    status = 500
    public_message = INTERNAL_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)

    def to_payload(self) -> dict:
        return {"error": self.public_message, "code": self.code}


class LinkError(NeedADropError):
    status = 404
    public_message = LINK_UNAVAILABLE_MESSAGE


class LinkNotFound(LinkError):
    code = "link_unavailable"


class LinkExpired(LinkError):
    code = "link_unavailable"


class LinkDeleted(LinkError):
    code = "link_unavailable"


class QuotaExceeded(NeedADropError):
    code = "quota_exceeded"
    status = 413
    public_message = "The upload exceeds the remaining quota of this link."

    def __init__(self, requested: int = 0, remaining: int = 0) -> None:
        super().__init__(
            f"Quota exceeded: requested={requested} remaining={remaining}"
        )
        self.requested = requested
        self.remaining = remaining


class InvalidFilename(NeedADropError):
    code = "invalid_filename"
    status = 400
    public_message = "The file name is not allowed."


class SizeMismatch(NeedADropError):
    code = "size_mismatch"
    status = 400
    public_message = "The uploaded data does not match the declared size."

    def __init__(self, declared: int, actual: int) -> None:
        super().__init__(f"Size mismatch: declared={declared} actual={actual}")
        self.declared = declared
        self.actual = actual


class StorageIOError(NeedADropError):
    code = "storage_error"
    status = 500


class UploadNotFound(NeedADropError):
    code = "upload_not_found"
    status = 404
    public_message = "Upload not found."


class InvalidLinkParameters(NeedADropError, ValueError):
    code = "invalid_parameters"
    status = 400
    public_message = "Invalid link parameters."

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.public_message = message


class InvalidCredentials(NeedADropError):
    code = "invalid_credentials"
    status = 401
    public_message = INVALID_CREDENTIALS_MESSAGE


class WeakPassword(NeedADropError, ValueError):
    code = "weak_password"
    status = 400
    public_message = "The new password does not meet the password policy."

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.public_message = message


class SessionError(NeedADropError):
    status = 401
    public_message = "Authentication required."


class SessionNotFound(SessionError):
    code = "session_invalid"


class SessionExpired(SessionError):
    code = "session_invalid"


class PersistenceError(NeedADropError):
    code = "persistence_error"
    status = 503
