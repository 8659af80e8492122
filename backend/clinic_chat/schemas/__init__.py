from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, List

from clinic_chat.constants import ContentType, DeliveryState, Role, SessionPriority, SessionType
from clinic_chat.models import ChatMessage, ChatSession, Participant
from clinic_chat.utils.clock import ensure_utc


def _iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value else None


# -------------------- Session Schemas --------------------


class ParticipantOut(BaseModel):
    user_id: str
    user_role: Role
    display_name: str
    last_seen_at: Optional[str] = None

    @classmethod
    def from_model(cls, p: Participant) -> "ParticipantOut":
        return cls(
            user_id=p.user_id,
            user_role=p.user_role,
            display_name=p.display_name,
            last_seen_at=_iso(p.last_seen_at),
        )


class LastMessageOut(BaseModel):
    message_id: str
    content: str
    sender_id: str
    sender_role: Role
    timestamp: str


class SessionMetadataOut(BaseModel):
    related_appointment_id: Optional[str] = None
    subject: Optional[str] = None
    priority: SessionPriority = SessionPriority.MEDIUM


class ChatSessionOut(BaseModel):
    id: str
    participants: List[ParticipantOut]
    session_type: SessionType
    last_message: Optional[LastMessageOut] = None
    is_active: bool
    metadata: SessionMetadataOut
    created_at: str
    unread_count: int = 0

    @classmethod
    def from_document(cls, session: ChatSession, unread_count: int = 0) -> "ChatSessionOut":
        last = None
        if session.last_message:
            lm = session.last_message
            last = LastMessageOut(
                message_id=str(lm.message_id),
                content=lm.content,
                sender_id=lm.sender_id,
                sender_role=lm.sender_role,
                timestamp=_iso(lm.timestamp),
            )
        return cls(
            id=str(session.id),
            participants=[ParticipantOut.from_model(p) for p in session.participants],
            session_type=session.session_type,
            last_message=last,
            is_active=session.is_active,
            metadata=SessionMetadataOut(**session.metadata.model_dump()),
            created_at=_iso(session.created_at),
            unread_count=unread_count,
        )


class SessionCreateIn(BaseModel):
    """فتح محادثة مع طبيب (أو استرجاع المحادثة الموجودة)."""
    counterpart_id: str
    subject: Optional[str] = None
    priority: SessionPriority = SessionPriority.MEDIUM
    related_appointment_id: Optional[str] = None


class ContactOut(BaseModel):
    user_id: str
    user_role: Role
    display_name: str
    session_id: str


class DoctorOut(BaseModel):
    """طبيب متاح لبدء محادثة."""
    user_id: str
    display_name: str
    specialization: Optional[str] = None
    image_url: Optional[str] = None


# -------------------- Message Schemas --------------------


class AttachmentIn(BaseModel):
    name: str
    url: str
    type: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)


class AttachmentOut(AttachmentIn):
    pass


class ReadReceiptOut(BaseModel):
    user_id: str
    user_role: Role
    read_at: str


class ReplyReferenceOut(BaseModel):
    message_id: str
    snapshot_content: str


class ChatMessageIn(BaseModel):
    content: str = ""
    content_type: ContentType = ContentType.TEXT
    reply_to_message_id: Optional[str] = None
    attachments: List[AttachmentIn] = Field(default_factory=list)
    client_message_id: Optional[str] = Field(None, max_length=64)


class ChatMessageEditIn(BaseModel):
    content: str


class ChatMessageOut(BaseModel):
    id: str
    session_id: str
    sender_id: str
    sender_role: Role
    sender_display_name: str
    content: str
    content_type: ContentType
    attachments: List[AttachmentOut] = []
    delivery_state: DeliveryState
    read_receipts: List[ReadReceiptOut] = []
    reply_to: Optional[ReplyReferenceOut] = None
    is_edited: bool = False
    edited_at: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[str] = None
    client_message_id: Optional[str] = None
    created_at: str

    @classmethod
    def from_document(cls, msg: ChatMessage) -> "ChatMessageOut":
        return cls(
            id=str(msg.id),
            session_id=str(msg.session_id),
            sender_id=msg.sender_id,
            sender_role=msg.sender_role,
            sender_display_name=msg.sender_display_name,
            content=msg.content,
            content_type=msg.content_type,
            attachments=[AttachmentOut(**a.model_dump()) for a in msg.attachments],
            delivery_state=msg.delivery_state,
            read_receipts=[
                ReadReceiptOut(user_id=r.user_id, user_role=r.user_role, read_at=_iso(r.read_at))
                for r in msg.read_receipts
            ],
            reply_to=(
                ReplyReferenceOut(
                    message_id=str(msg.reply_to.message_id),
                    snapshot_content=msg.reply_to.snapshot_content,
                )
                if msg.reply_to
                else None
            ),
            is_edited=msg.is_edited,
            edited_at=_iso(msg.edited_at),
            is_deleted=msg.is_deleted,
            deleted_at=_iso(msg.deleted_at),
            client_message_id=msg.client_message_id,
            created_at=_iso(msg.created_at),
        )


class MessagePageOut(BaseModel):
    messages: List[ChatMessageOut]
    next_cursor: Optional[str] = None


class MarkReadOut(BaseModel):
    session_id: str
    marked_count: int
