from enum import Enum

class Role(str, Enum):
    """System roles for RBAC."""
    ADMIN = "admin"           # مدير النظام
    DOCTOR = "doctor"         # طبيب
    PATIENT = "patient"       # مريض


# الأدوار المسموح لها بالمشاركة في المحادثات
CHAT_ROLES = (Role.PATIENT, Role.DOCTOR)


class SessionType(str, Enum):
    PATIENT_DOCTOR = "patient-doctor"


class SessionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    STRUCTURED_NOTE = "structured-note"


class DeliveryState(str, Enum):
    """Per-message progression; never moves backwards."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _DELIVERY_RANK[self]


_DELIVERY_RANK = {
    DeliveryState.SENT: 0,
    DeliveryState.DELIVERED: 1,
    DeliveryState.READ: 2,
}

DELETED_MESSAGE_PLACEHOLDER = "This message was deleted"


class ChatEvent:
    """Live channel event names (server -> client)."""
    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_DELETED = "message.deleted"
    MESSAGES_READ = "messages.read"
    PRESENCE_JOINED = "presence.joined"
    PRESENCE_LEFT = "presence.left"
    PRESENCE_TYPING = "presence.typing"
    PRESENCE_OFFLINE = "presence.offline"
    SESSION_JOINED = "session.joined"
    SESSION_LEFT = "session.left"
    MESSAGE_SENT = "message.sent"
    MARKED_READ = "messages.marked_read"
    ERROR = "error"
