"""Client-side view of one conversation.

Fetched pages are authoritative. Live events are low-latency hints merged by
message id; they never override a newer fetched version.
"""
from datetime import datetime
from typing import Dict, Iterable, List

from clinic_chat.client.pending import PendingMessage, PendingState
from clinic_chat.constants import DeliveryState


def _created(message: dict) -> datetime:
    return datetime.fromisoformat(message["created_at"])


def _version(message: dict) -> tuple:
    return (
        bool(message.get("is_deleted")),
        message.get("edited_at") or "",
        DeliveryState(message.get("delivery_state", DeliveryState.SENT.value)).rank,
        len(message.get("read_receipts") or ()),
    )


class MessageTimeline:
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._messages: Dict[str, dict] = {}
        self._pending: Dict[str, PendingMessage] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> dict | None:
        return self._messages.get(message_id)

    def upsert(self, message: dict, authoritative: bool = False) -> None:
        current = self._messages.get(message["id"])
        if current is None or authoritative or _version(message) >= _version(current):
            self._messages[message["id"]] = message
        client_id = message.get("client_message_id")
        if client_id:
            self._pending.pop(client_id, None)

    def merge(self, messages: Iterable[dict]) -> None:
        """Merge a fetched page."""
        for message in messages:
            self.upsert(message, authoritative=True)

    def apply_read(self, event: dict) -> None:
        """Apply a ``messages.read`` summary to the local copies."""
        reader = event["reader_id"]
        for message in self._messages.values():
            receipts = message.setdefault("read_receipts", [])
            if message["sender_id"] == reader or any(r["user_id"] == reader for r in receipts):
                continue
            receipts.append({"user_id": reader, "user_role": event["reader_role"], "read_at": event["read_at"]})
            message["delivery_state"] = DeliveryState.READ.value

    def add_pending(self, pending: PendingMessage) -> None:
        self._pending[pending.client_message_id] = pending
        pending.add_done_callback(self._on_pending_done)

    def _on_pending_done(self, pending: PendingMessage) -> None:
        if pending.state == PendingState.CONFIRMED and pending.message:
            self.upsert(pending.message, authoritative=True)
        self._pending.pop(pending.client_message_id, None)

    @property
    def pending(self) -> List[PendingMessage]:
        return list(self._pending.values())

    def messages(self) -> List[dict]:
        return sorted(self._messages.values(), key=lambda m: (_created(m), m["id"]))
