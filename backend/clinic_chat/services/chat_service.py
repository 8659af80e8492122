"""
Chat service: the single writer of conversation sessions and messages.

Every mutation checks membership through ``chat_policy`` before touching the
store, then hands the resulting event to the broadcaster (the transport
gateway in production, a recording stub in tests). Persistence is
authoritative; broadcasting is best-effort and never fails a write.
"""
import base64
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from beanie import PydanticObjectId as OID
from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from clinic_chat.config import Settings, get_settings
from clinic_chat.constants import (
    DELETED_MESSAGE_PLACEHOLDER,
    ChatEvent,
    ContentType,
    DeliveryState,
    Role,
    SessionType,
)
from clinic_chat.errors import (
    ForbiddenError,
    NotFoundError,
    TransientError,
    ValidationError,
    transient_store_errors,
)
from clinic_chat.models import (
    Attachment,
    ChatMessage,
    ChatSession,
    LastMessageSummary,
    Participant,
    ReplyReference,
    SessionMetadata,
)
from clinic_chat.models.chat import pair_key
from clinic_chat.schemas import ChatMessageOut
from clinic_chat.services import chat_policy
from clinic_chat.services.identity_service import Identity, IdentityProvider, UserProfile
from clinic_chat.utils.clock import ensure_utc, to_storage, utcnow
from clinic_chat.utils.logger import get_logger

logger = get_logger("chat_service")

_NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


class Broadcaster(Protocol):
    async def broadcast(self, session_id: str, event: str, payload: dict, skip_sid: Optional[str] = None) -> int:
        ...


class SessionWithUnread(BaseModel):
    session: ChatSession
    unread_count: int


class MessagePage(BaseModel):
    """Messages in ascending order plus the cursor for the next (older) page."""
    messages: List[ChatMessage]
    next_cursor: Optional[str] = None


# ------------------------ cursor helpers ------------------------


def encode_cursor(message: ChatMessage) -> str:
    raw = f"{ensure_utc(message.created_at).isoformat()}|{message.id}"
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> Tuple[datetime, OID]:
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        created_at, message_id = raw.split("|", 1)
        return ensure_utc(datetime.fromisoformat(created_at)), OID(message_id)
    except Exception:
        raise ValidationError("Invalid cursor")


def _parse_oid(value, not_found: str) -> OID:
    if isinstance(value, OID):
        return value
    try:
        return OID(str(value))
    except Exception:
        raise NotFoundError(not_found)


def _summary_doc(summary: LastMessageSummary) -> dict:
    return {
        "message_id": summary.message_id,
        "content": summary.content,
        "sender_id": summary.sender_id,
        "sender_role": summary.sender_role.value,
        "timestamp": to_storage(summary.timestamp),
    }


class ChatService:
    def __init__(
        self,
        broadcaster: Optional[Broadcaster] = None,
        identity_provider: Optional[IdentityProvider] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.broadcaster = broadcaster
        self.identity_provider = identity_provider
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def edit_window(self) -> timedelta:
        return timedelta(minutes=self.settings.CHAT_EDIT_WINDOW_MINUTES)

    # ------------------------ loading ------------------------

    async def _load_session(self, session_id) -> ChatSession:
        oid = _parse_oid(session_id, "Conversation not found")
        with transient_store_errors("load conversation"):
            session = await ChatSession.get(oid)
        if not session:
            raise NotFoundError("Conversation not found")
        return session

    async def _load_message(self, message_id) -> ChatMessage:
        oid = _parse_oid(message_id, "Message not found")
        with transient_store_errors("load message"):
            message = await ChatMessage.get(oid)
        if not message:
            raise NotFoundError("Message not found")
        return message

    async def get_session(self, session_id, user_id: str) -> ChatSession:
        """Membership-checked read; inactive sessions stay readable."""
        session = await self._load_session(session_id)
        if not chat_policy.can_read(session, user_id):
            raise ForbiddenError("Not a participant of this conversation")
        return session

    # ------------------------ sessions ------------------------

    async def get_or_create_session(
        self,
        initiator: Identity,
        counterpart_id: str,
        metadata: Optional[SessionMetadata] = None,
    ) -> Tuple[ChatSession, bool]:
        """Return the active session between a patient and a doctor, creating it on first contact.

        The boolean is True when a new session was inserted.
        """
        if not chat_policy.can_initiate(initiator.role):
            raise ForbiddenError("Only patients can start a conversation")

        doctor = await self.identity_provider.lookup_user(counterpart_id, Role.DOCTOR)
        participants = [
            Participant(
                user_id=initiator.user_id,
                user_role=Role.PATIENT,
                display_name=initiator.display_name,
            ),
            Participant(
                user_id=doctor.user_id,
                user_role=Role.DOCTOR,
                display_name=doctor.display_name,
            ),
        ]
        key = pair_key(SessionType.PATIENT_DOCTOR, participants)

        with transient_store_errors("look up conversation"):
            existing = await ChatSession.find_one(ChatSession.active_pair_key == key)
        if existing:
            return existing, False

        metadata = metadata or SessionMetadata()
        if not metadata.subject:
            metadata = metadata.model_copy(update={"subject": f"Consultation with Dr. {doctor.display_name}"})

        now = self.clock()
        session = ChatSession(
            participants=participants,
            session_type=SessionType.PATIENT_DOCTOR,
            active_pair_key=key,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        try:
            with transient_store_errors("create conversation"):
                await session.insert()
        except DuplicateKeyError:
            # a concurrent request created the session for this pair first
            with transient_store_errors("look up conversation"):
                existing = await ChatSession.find_one(ChatSession.active_pair_key == key)
            if existing:
                return existing, False
            raise TransientError("Conversation could not be created, please retry")

        logger.info(f"Conversation {session.id} opened between patient {initiator.user_id} and doctor {doctor.user_id}")
        return session, True

    async def count_unread(self, session_id: OID, user_id: str) -> int:
        with transient_store_errors("count unread messages"):
            return await ChatMessage.find(
                {
                    "session_id": session_id,
                    "sender_id": {"$ne": user_id},
                    "read_receipts.user_id": {"$ne": user_id},
                }
            ).count()

    async def _active_sessions_for(self, user_id: str, user_role: Role) -> List[ChatSession]:
        with transient_store_errors("list conversations"):
            return await ChatSession.find(
                {
                    "is_active": True,
                    "participants": {"$elemMatch": {"user_id": user_id, "user_role": user_role.value}},
                }
            ).to_list()

    async def list_sessions(self, user_id: str, user_role: Role) -> List[SessionWithUnread]:
        """Active sessions of the caller, most recent activity first, with unread counts."""
        sessions = await self._active_sessions_for(user_id, user_role)

        result = []
        for session in sessions:
            unread = await self.count_unread(session.id, user_id)
            result.append(SessionWithUnread(session=session, unread_count=unread))

        def activity(item: SessionWithUnread) -> datetime:
            s = item.session
            return ensure_utc(s.last_message.timestamp if s.last_message else s.created_at)

        result.sort(key=activity, reverse=True)
        return result

    async def list_contacts(self, identity: Identity) -> List[Tuple[Participant, str]]:
        """Distinct counterparts across the caller's active sessions."""
        sessions = await self._active_sessions_for(identity.user_id, identity.role)
        seen: set[str] = set()
        contacts = []
        for session in sessions:
            for other in session.counterparts(identity.user_id):
                if other.key in seen:
                    continue
                seen.add(other.key)
                contacts.append((other, str(session.id)))
        return contacts

    async def list_available_doctors(self) -> List[UserProfile]:
        """Doctors a patient can open a conversation with."""
        return await self.identity_provider.list_doctors()

    async def deactivate_session(self, session_id, user_id: str) -> ChatSession:
        """Close the session for new messages; history stays readable."""
        session = await self.get_session(session_id, user_id)
        if not session.is_active:
            return session
        now = self.clock()
        with transient_store_errors("deactivate conversation"):
            await ChatSession.find_one({"_id": session.id}).update(
                {
                    "$set": {"is_active": False, "deactivated_at": to_storage(now), "updated_at": to_storage(now)},
                    "$unset": {"active_pair_key": ""},
                }
            )
        session.is_active = False
        session.active_pair_key = None
        session.deactivated_at = now
        logger.info(f"Conversation {session.id} deactivated by {user_id}")
        return session

    async def touch_last_seen(self, session_id, user_id: str) -> None:
        oid = _parse_oid(session_id, "Conversation not found")
        with transient_store_errors("update last seen"):
            await ChatSession.find_one({"_id": oid, "participants.user_id": user_id}).update(
                {"$set": {"participants.$.last_seen_at": to_storage(self.clock())}}
            )

    # ------------------------ messages ------------------------

    def _page_size(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.settings.CHAT_PAGE_SIZE_DEFAULT
        if limit < 1:
            raise ValidationError("limit must be a positive number")
        return min(limit, self.settings.CHAT_PAGE_SIZE_MAX)

    async def list_messages(
        self,
        session_id,
        caller_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> MessagePage:
        """Page of messages in chronological order.

        Without a cursor the newest page is returned; ``next_cursor`` points at
        the page of strictly older messages and is None when there is none.
        """
        session = await self.get_session(session_id, caller_id)
        size = self._page_size(limit)

        query: dict = {"session_id": session.id}
        if cursor:
            created_at, message_id = decode_cursor(cursor)
            stored = to_storage(created_at)
            query["$or"] = [
                {"created_at": {"$lt": stored}},
                {"created_at": stored, "_id": {"$lt": message_id}},
            ]

        with transient_store_errors("list messages"):
            batch = await ChatMessage.find(query).sort(_NEWEST_FIRST).limit(size + 1).to_list()

        has_more = len(batch) > size
        page = batch[:size]
        page.reverse()
        next_cursor = encode_cursor(page[0]) if has_more and page else None
        return MessagePage(messages=page, next_cursor=next_cursor)

    def _validate_content(self, content: Optional[str], content_type: ContentType, attachments) -> str:
        text = (content or "").strip()
        limit = self.settings.CHAT_MAX_CONTENT_LENGTH
        if len(text) > limit:
            raise ValidationError(f"Message exceeds the {limit} character limit")
        if content_type == ContentType.TEXT and not text:
            raise ValidationError("Message content cannot be empty")
        if content_type != ContentType.TEXT and not text and not attachments:
            raise ValidationError("Message must contain content or an attachment")
        return text

    async def post_message(
        self,
        session_id,
        sender: Identity,
        content: str,
        content_type: ContentType = ContentType.TEXT,
        reply_to_message_id: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        client_message_id: Optional[str] = None,
    ) -> ChatMessage:
        session = await self._load_session(session_id)
        if not chat_policy.can_post(session, sender.user_id):
            raise ForbiddenError("Not an active participant of this conversation")
        participant = session.participant(sender.user_id)
        attachments = list(attachments or [])
        text = self._validate_content(content, content_type, attachments)

        if client_message_id:
            with transient_store_errors("look up message"):
                existing = await ChatMessage.find_one(
                    {
                        "session_id": session.id,
                        "client_message_id": client_message_id,
                        "sender_id": sender.user_id,
                    }
                )
            if existing:
                # retried submission; the first one was stored but its follow-up may not have finished
                await self._complete_post(session.id, existing)
                return existing

        reply = None
        if reply_to_message_id:
            target = await self._load_message(reply_to_message_id)
            if target.session_id != session.id:
                raise NotFoundError("Replied-to message not found in this conversation")
            reply = ReplyReference(message_id=target.id, snapshot_content=target.content)

        message = ChatMessage(
            session_id=session.id,
            sender_id=sender.user_id,
            sender_role=participant.user_role,
            sender_display_name=sender.display_name,
            content=text,
            content_type=content_type,
            attachments=attachments,
            reply_to=reply,
            client_message_id=client_message_id,
            created_at=self.clock(),
        )
        with transient_store_errors("store message"):
            await message.insert()
        logger.info(
            f"Message {message.id} stored - Session: {session.id}, "
            f"Sender: {sender.user_id} (role={participant.user_role.value})"
        )

        await self._complete_post(session.id, message)
        return message

    async def _complete_post(self, session_id: OID, message: ChatMessage) -> None:
        """Summary, self-acknowledgment and broadcast for a stored message.

        Each step is safe to repeat, so a retried submission runs them again.
        """
        await self._advance_summary(session_id, message.summary())
        await self._acknowledge_delivery(message)
        await self._broadcast(
            session_id,
            ChatEvent.MESSAGE_CREATED,
            {"message": ChatMessageOut.from_document(message).model_dump(mode="json")},
        )

    async def _write_summary(self, session_id: OID, summary: LastMessageSummary) -> None:
        """Conditional write: the summary only ever moves forward in (timestamp, message_id) order."""
        stored = to_storage(summary.timestamp)
        guard = {
            "_id": session_id,
            "$or": [
                {"last_message": None},
                {"last_message.timestamp": {"$lt": stored}},
                {"last_message.timestamp": stored, "last_message.message_id": {"$lt": summary.message_id}},
            ],
        }
        await ChatSession.find_one(guard).update(
            {"$set": {"last_message": _summary_doc(summary), "updated_at": to_storage(self.clock())}}
        )

    async def _advance_summary(self, session_id: OID, summary: LastMessageSummary) -> None:
        try:
            with transient_store_errors("update conversation summary"):
                await self._write_summary(session_id, summary)
        except TransientError:
            logger.warning(f"Summary update failed for session {session_id}, reconciling from the message log")
            try:
                await self.reconcile_summary(session_id)
            except TransientError:
                logger.error(f"Summary reconciliation failed for session {session_id}")
                raise

    async def reconcile_summary(self, session_id) -> Optional[LastMessageSummary]:
        """Re-derive the session summary from the newest message in the log."""
        oid = _parse_oid(session_id, "Conversation not found")
        with transient_store_errors("reconcile conversation summary"):
            newest = await ChatMessage.find(ChatMessage.session_id == oid).sort(_NEWEST_FIRST).limit(1).to_list()
            if not newest:
                return None
            summary = newest[0].summary()
            await self._write_summary(oid, summary)
        return summary

    async def _acknowledge_delivery(self, message: ChatMessage) -> None:
        """Sender self-acknowledgment: sent -> delivered, never backwards."""
        try:
            with transient_store_errors("acknowledge delivery"):
                await ChatMessage.find_one(
                    {"_id": message.id, "delivery_state": DeliveryState.SENT.value}
                ).update({"$set": {"delivery_state": DeliveryState.DELIVERED.value}})
        except TransientError:
            # the message stays "sent"; the state only ever moves forward later
            logger.warning(f"Delivery acknowledgment for message {message.id} failed")
            return
        if message.delivery_state.rank < DeliveryState.DELIVERED.rank:
            message.delivery_state = DeliveryState.DELIVERED

    async def mark_read(self, session_id, reader: Identity) -> int:
        """Add a read receipt for ``reader`` to every unread message sent by someone else.

        Idempotent. Returns how many messages changed; one ``messages.read``
        event is emitted per call that changed something.
        """
        session = await self.get_session(session_id, reader.user_id)
        participant = session.participant(reader.user_id)
        now = self.clock()
        receipt = {
            "user_id": reader.user_id,
            "user_role": participant.user_role.value,
            "read_at": to_storage(now),
        }
        with transient_store_errors("mark messages as read"):
            result = await ChatMessage.find(
                {
                    "session_id": session.id,
                    "sender_id": {"$ne": reader.user_id},
                    "read_receipts.user_id": {"$ne": reader.user_id},
                }
            ).update(
                {
                    "$push": {"read_receipts": receipt},
                    "$set": {"delivery_state": DeliveryState.READ.value},
                }
            )
        count = result.modified_count if result is not None else 0

        if count:
            logger.info(f"{count} messages marked read in session {session.id} by {reader.user_id}")
            await self._broadcast(
                session.id,
                ChatEvent.MESSAGES_READ,
                {
                    "session_id": str(session.id),
                    "reader_id": reader.user_id,
                    "reader_role": participant.user_role.value,
                    "read_at": ensure_utc(now).isoformat(),
                    "count": count,
                },
            )
        return count

    async def _refresh_summary_content(self, message: ChatMessage) -> None:
        with transient_store_errors("refresh conversation summary"):
            await ChatSession.find_one(
                {"_id": message.session_id, "last_message.message_id": message.id}
            ).update({"$set": {"last_message.content": message.content}})

    async def edit_message(self, message_id, editor_id: str, new_content: str) -> ChatMessage:
        message = await self._load_message(message_id)
        if not chat_policy.can_edit(message, editor_id):
            raise ForbiddenError("Only the sender can edit this message")
        if message.is_deleted:
            raise ValidationError("Deleted messages cannot be edited")
        now = self.clock()
        if not chat_policy.within_edit_window(message, now, self.edit_window):
            raise ValidationError("Message is too old to edit")
        text = self._validate_content(new_content, message.content_type, message.attachments)

        with transient_store_errors("edit message"):
            await message.set({"content": text, "is_edited": True, "edited_at": now})
        await self._refresh_summary_content(message)

        await self._broadcast(
            message.session_id,
            ChatEvent.MESSAGE_UPDATED,
            {"message": ChatMessageOut.from_document(message).model_dump(mode="json")},
        )
        return message

    async def delete_message(self, message_id, requester_id: str) -> ChatMessage:
        """Soft delete: content is replaced by a placeholder, the record keeps its place."""
        message = await self._load_message(message_id)
        if not chat_policy.can_delete(message, requester_id):
            raise ForbiddenError("Only the sender can delete this message")
        if message.is_deleted:
            return message

        with transient_store_errors("delete message"):
            await message.set(
                {
                    "is_deleted": True,
                    "deleted_at": self.clock(),
                    "content": DELETED_MESSAGE_PLACEHOLDER,
                    "attachments": [],
                }
            )
        await self._refresh_summary_content(message)
        logger.info(f"Message {message.id} deleted by {requester_id}")

        await self._broadcast(
            message.session_id,
            ChatEvent.MESSAGE_DELETED,
            {"message": ChatMessageOut.from_document(message).model_dump(mode="json")},
        )
        return message

    # ------------------------ live channel ------------------------

    async def _broadcast(self, session_id, event: str, payload: dict) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.broadcast(str(session_id), event, payload)
        except Exception as e:
            logger.warning(f"Broadcast of {event} to session {session_id} failed: {e}")
