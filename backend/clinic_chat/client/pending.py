"""Two-phase send: a pending result returned immediately, resolved later."""
import asyncio
from enum import Enum
from typing import Callable, List, Optional
from uuid import uuid4


class PendingState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PendingMessage:
    """A message the user sent that the server has not confirmed yet.

    It ends up either ``confirmed`` (``message`` holds the stored message) or
    ``failed`` (``error`` holds the reason). Nothing is retried silently.
    """

    def __init__(self, session_id: str, content: str, content_type: str = "text",
                 client_message_id: Optional[str] = None,
                 reply_to_message_id: Optional[str] = None) -> None:
        self.session_id = session_id
        self.content = content
        self.content_type = content_type
        self.reply_to_message_id = reply_to_message_id
        self.client_message_id = client_message_id or uuid4().hex
        self.state = PendingState.PENDING
        self.message: Optional[dict] = None
        self.error: Optional[Exception] = None
        self._done = asyncio.Event()
        self._callbacks: List[Callable[["PendingMessage"], None]] = []

    @property
    def done(self) -> bool:
        return self.state != PendingState.PENDING

    def add_done_callback(self, callback: Callable[["PendingMessage"], None]) -> None:
        if self.done:
            callback(self)
        else:
            self._callbacks.append(callback)

    def confirm(self, message: dict) -> None:
        if self.done:
            return
        self.state = PendingState.CONFIRMED
        self.message = message
        self._resolve()

    def fail(self, error: Exception) -> None:
        if self.done:
            return
        self.state = PendingState.FAILED
        self.error = error
        self._resolve()

    def _resolve(self) -> None:
        self._done.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    async def wait(self, timeout: Optional[float] = None) -> dict:
        """Wait for the outcome; raises the failure instead of hiding it."""
        await asyncio.wait_for(self._done.wait(), timeout)
        if self.state == PendingState.FAILED:
            raise self.error
        return self.message
