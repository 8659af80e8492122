"""Authorization predicates for chat operations.

Every role or membership decision made by the chat service goes through one of
these functions.
"""
from datetime import datetime, timedelta

from clinic_chat.constants import Role
from clinic_chat.models import ChatMessage, ChatSession
from clinic_chat.utils.clock import ensure_utc


def is_participant(session: ChatSession, user_id: str) -> bool:
    return session.participant(user_id) is not None


def can_read(session: ChatSession, user_id: str) -> bool:
    # history stays readable after deactivation
    return is_participant(session, user_id)


def can_post(session: ChatSession, user_id: str) -> bool:
    return session.is_active and is_participant(session, user_id)


def can_initiate(role: Role) -> bool:
    return role == Role.PATIENT


def can_edit(message: ChatMessage, user_id: str) -> bool:
    return message.sender_id == user_id


def can_delete(message: ChatMessage, user_id: str) -> bool:
    return message.sender_id == user_id


def within_edit_window(message: ChatMessage, now: datetime, window: timedelta) -> bool:
    """True up to and including the exact end of the window."""
    return ensure_utc(now) - ensure_utc(message.created_at) <= window
