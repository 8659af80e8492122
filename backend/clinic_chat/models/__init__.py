# Re-export Beanie documents
from .user import User
from .chat import (
    ChatSession,
    ChatMessage,
    Participant,
    LastMessageSummary,
    SessionMetadata,
    Attachment,
    ReadReceipt,
    ReplyReference,
)
