from beanie import Document, Indexed
from beanie import PydanticObjectId as OID
from pydantic import BaseModel, Field, model_validator
from pymongo import ASCENDING, DESCENDING, IndexModel
from datetime import datetime
from typing import List, Optional

from clinic_chat.constants import (
    CHAT_ROLES,
    ContentType,
    DeliveryState,
    Role,
    SessionPriority,
    SessionType,
)
from clinic_chat.utils.clock import utcnow


class Participant(BaseModel):
    """طرف في المحادثة (مريض أو طبيب)."""
    user_id: str
    user_role: Role
    display_name: str
    last_seen_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.user_role.value}:{self.user_id}"


class LastMessageSummary(BaseModel):
    """Denormalized copy of the newest accepted message, used for list rendering."""
    message_id: OID
    content: str
    sender_id: str
    sender_role: Role
    timestamp: datetime


class SessionMetadata(BaseModel):
    related_appointment_id: Optional[str] = None  # opaque, never dereferenced
    subject: Optional[str] = None
    priority: SessionPriority = SessionPriority.MEDIUM


def pair_key(session_type: SessionType, participants: List[Participant]) -> str:
    """Order-independent key for a participant set within a session type."""
    members = "|".join(sorted(p.key for p in participants))
    return f"{session_type.value}:{members}"


class ChatSession(Document):
    """محادثة واحدة نشطة لكل زوج (مريض، طبيب)."""
    participants: List[Participant]
    session_type: SessionType = SessionType.PATIENT_DOCTOR
    last_message: Optional[LastMessageSummary] = None
    is_active: bool = True
    # Present only while active; unique sparse index keeps one active session per pair.
    active_pair_key: Optional[str] = None
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deactivated_at: Optional[datetime] = None

    class Settings:
        name = "chat_sessions"
        keep_nulls = False
        indexes = [
            IndexModel([("participants.user_id", ASCENDING)]),
            IndexModel([("active_pair_key", ASCENDING)], unique=True, sparse=True),
            IndexModel([("last_message.timestamp", DESCENDING)]),
        ]

    @model_validator(mode="after")
    def _check_participants(self) -> "ChatSession":
        keys = [p.key for p in self.participants]
        if len(set(keys)) != len(keys):
            raise ValueError("participants must be unique by (user_id, user_role)")
        if any(p.user_role not in CHAT_ROLES for p in self.participants):
            raise ValueError("only patients and doctors can take part in a chat")
        if self.session_type == SessionType.PATIENT_DOCTOR:
            roles = sorted(p.user_role.value for p in self.participants)
            if roles != [Role.DOCTOR.value, Role.PATIENT.value]:
                raise ValueError("a patient-doctor session needs one patient and one doctor")
        return self

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def counterparts(self, user_id: str) -> List[Participant]:
        return [p for p in self.participants if p.user_id != user_id]

    def compute_pair_key(self) -> str:
        return pair_key(self.session_type, self.participants)


class Attachment(BaseModel):
    name: str
    url: str
    type: Optional[str] = None
    size: Optional[int] = None


class ReadReceipt(BaseModel):
    user_id: str
    user_role: Role
    read_at: datetime


class ReplyReference(BaseModel):
    """Weak back-reference to another message of the same session."""
    message_id: OID
    snapshot_content: str


class ChatMessage(Document):
    """رسالة دردشة محفوظة."""
    session_id: Indexed(OID)
    sender_id: str
    sender_role: Role
    sender_display_name: str
    content: str
    content_type: ContentType = ContentType.TEXT
    attachments: List[Attachment] = Field(default_factory=list)
    delivery_state: DeliveryState = DeliveryState.SENT
    read_receipts: List[ReadReceipt] = Field(default_factory=list)
    reply_to: Optional[ReplyReference] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    client_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "chat_messages"
        keep_nulls = False
        indexes = [
            IndexModel([("session_id", ASCENDING), ("created_at", ASCENDING)]),
            IndexModel([("session_id", ASCENDING), ("client_message_id", ASCENDING)], sparse=True),
            IndexModel([("sender_id", ASCENDING)]),
        ]

    def has_receipt_from(self, user_id: str) -> bool:
        return any(r.user_id == user_id for r in self.read_receipts)

    def summary(self) -> LastMessageSummary:
        return LastMessageSummary(
            message_id=self.id,
            content=self.content,
            sender_id=self.sender_id,
            sender_role=self.sender_role,
            timestamp=self.created_at,
        )
