"""
Chat error taxonomy.

Each error carries the HTTP status used by the REST surface and the short code
sent to Socket.IO clients in ``error`` events.
"""
from contextlib import contextmanager

from pymongo.errors import ConnectionFailure


class ChatError(Exception):
    status_code: int = 500
    code: str = "E500"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"message": self.message, "code": self.code}


class AuthError(ChatError):
    """Bad, missing or expired credential."""
    status_code = 401
    code = "E401"


class ForbiddenError(ChatError):
    """Authenticated but not allowed to touch this session/message."""
    status_code = 403
    code = "E403"


class NotFoundError(ChatError):
    status_code = 404
    code = "E404"


class ValidationError(ChatError):
    """Content cap exceeded, edit window expired, empty required field."""
    status_code = 422
    code = "E400"


class TransientError(ChatError):
    """Store temporarily unavailable; the same operation can be retried."""
    status_code = 503
    code = "E503"


@contextmanager
def transient_store_errors(action: str):
    """Convert pymongo connectivity failures raised inside the block into TransientError."""
    try:
        yield
    except ConnectionFailure as exc:
        raise TransientError(f"Store unavailable while trying to {action}, please retry") from exc
