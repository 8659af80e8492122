"""
Socket.IO transport gateway for real-time chat.

One gateway object per process owns the connection registry
(sid -> identity, session rooms). It is created at startup, bound to the chat
service and identity provider, and torn down at shutdown. The chat service
talks to it only through ``broadcast``.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Set

import socketio
from pydantic import ValidationError as PydanticValidationError
from socketio.exceptions import ConnectionRefusedError

from clinic_chat.config import Settings, get_settings
from clinic_chat.constants import ChatEvent, ContentType
from clinic_chat.errors import AuthError, ChatError, ValidationError
from clinic_chat.models import Attachment
from clinic_chat.schemas import AttachmentIn, ChatMessageOut
from clinic_chat.security import bearer_from_header
from clinic_chat.services.identity_service import Identity
from clinic_chat.utils.logger import get_logger

logger = get_logger("socket")


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"
    DISCONNECTED = "disconnected"


@dataclass
class Connection:
    sid: str
    state: ConnectionState = ConnectionState.CONNECTING
    identity: Optional[Identity] = None
    rooms: Set[str] = field(default_factory=set)


def _parse_attachments(raw) -> list:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ValidationError("attachments must be a list")
    try:
        return [Attachment(**AttachmentIn.model_validate(a).model_dump()) for a in raw]
    except PydanticValidationError:
        raise ValidationError("Invalid attachment")


class TransportGateway:
    def __init__(self, sio: Optional[socketio.AsyncServer] = None, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.sio = sio or socketio.AsyncServer(
            cors_allowed_origins="*",
            async_mode="asgi",
            logger=False,
            engineio_logger=False,
        )
        self.chat_service = None
        self.identity_provider = None

        # sid -> connection
        self.connections: Dict[str, Connection] = {}
        # session id -> sids in that room
        self.rooms: Dict[str, Set[str]] = {}
        # user id -> sids
        self.user_connections: Dict[str, Set[str]] = {}

        self.sio.on("connect", self.on_connect)
        self.sio.on("disconnect", self.on_disconnect)
        self.sio.on("join_session", self.on_join_session)
        self.sio.on("leave_session", self.on_leave_session)
        self.sio.on("typing", self.on_typing)
        self.sio.on("send_message", self.on_send_message)
        self.sio.on("mark_read", self.on_mark_read)

    def bind(self, chat_service, identity_provider) -> None:
        self.chat_service = chat_service
        self.identity_provider = identity_provider

    def asgi_app(self, other_asgi_app=None) -> socketio.ASGIApp:
        """Get Socket.IO ASGI app, optionally wrapping the HTTP app."""
        return socketio.ASGIApp(self.sio, other_asgi_app=other_asgi_app, socketio_path=self.settings.SOCKET_PATH)

    async def shutdown(self) -> None:
        for sid in list(self.connections):
            try:
                await self.sio.disconnect(sid)
            except Exception as e:
                logger.warning(f"Failed to close socket {sid} on shutdown: {e}")
        self.connections.clear()
        self.rooms.clear()
        self.user_connections.clear()

    # ------------------------ registry ------------------------

    def room_members(self, session_id: str) -> Set[str]:
        return set(self.rooms.get(session_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self.user_connections.get(user_id))

    def join_room(self, sid: str, session_id: str) -> None:
        conn = self.connections[sid]
        conn.rooms.add(session_id)
        self.rooms.setdefault(session_id, set()).add(sid)

    def leave_room(self, sid: str, session_id: str) -> bool:
        conn = self.connections.get(sid)
        if conn is None or session_id not in conn.rooms:
            return False
        conn.rooms.discard(session_id)
        members = self.rooms.get(session_id)
        if members is not None:
            members.discard(sid)
            if not members:
                self.rooms.pop(session_id, None)
        return True

    # ------------------------ fan-out ------------------------

    async def broadcast(self, session_id: str, event: str, payload: dict, skip_sid: Optional[str] = None) -> int:
        """Emit to every connected member of the session room.

        Best-effort and isolated per recipient: one failing socket does not stop
        the others. Returns the number of successful emits.
        """
        targets = [sid for sid in self.room_members(session_id) if sid != skip_sid]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self.sio.emit(event, payload, to=sid) for sid in targets),
            return_exceptions=True,
        )
        delivered = 0
        for sid, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to emit {event} to {sid} in session {session_id}: {result}")
            else:
                delivered += 1
        return delivered

    async def _emit_error(self, sid: str, error: ChatError) -> dict:
        payload = error.to_payload()
        try:
            await self.sio.emit(ChatEvent.ERROR, payload, to=sid)
        except Exception as e:
            logger.warning(f"Failed to emit error to {sid}: {e}")
        return {"ok": False, "error": payload}

    @staticmethod
    def _presence_payload(session_id: str, identity: Identity) -> dict:
        return {
            "session_id": session_id,
            "user_id": identity.user_id,
            "user_role": identity.role.value,
            "display_name": identity.display_name,
        }

    # ------------------------ connection lifecycle ------------------------

    @staticmethod
    def _extract_token(environ: Optional[dict], auth: Optional[dict]) -> Optional[str]:
        token = None
        if isinstance(auth, dict):
            token = auth.get("token")
        if not token and environ:
            token = bearer_from_header(environ.get("HTTP_AUTHORIZATION", ""))
        return token

    async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> bool:
        """Authenticate once; the connection is refused if that fails or takes too long."""
        conn = Connection(sid=sid)
        self.connections[sid] = conn
        token = self._extract_token(environ, auth)
        try:
            if not token:
                raise AuthError("No token provided")
            if self.identity_provider is None:
                raise AuthError("Authentication unavailable")
            identity = await asyncio.wait_for(
                self.identity_provider.resolve_identity(token),
                timeout=self.settings.SOCKET_AUTH_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            self._reject(conn, "authentication timed out")
            raise ConnectionRefusedError("Authentication error: timed out")
        except ChatError as e:
            self._reject(conn, e.message)
            raise ConnectionRefusedError(f"Authentication error: {e.message}")

        conn.identity = identity
        conn.state = ConnectionState.AUTHENTICATED
        self.user_connections.setdefault(identity.user_id, set()).add(sid)
        logger.info(f"User connected: {identity.user_id} ({identity.display_name}) - Socket: {sid}")
        return True

    def _reject(self, conn: Connection, reason: str) -> None:
        conn.state = ConnectionState.REJECTED
        self.connections.pop(conn.sid, None)
        logger.warning(f"Connection rejected for {conn.sid}: {reason}")

    async def on_disconnect(self, sid: str, reason=None) -> None:
        """Leave every room and tell the remaining members."""
        conn = self.connections.pop(sid, None)
        if conn is None:
            return
        conn.state = ConnectionState.DISCONNECTED
        rooms = list(conn.rooms)
        for session_id in rooms:
            members = self.rooms.get(session_id)
            if members is not None:
                members.discard(sid)
                if not members:
                    self.rooms.pop(session_id, None)
        conn.rooms.clear()

        identity = conn.identity
        if identity is None:
            return
        user_sids = self.user_connections.get(identity.user_id)
        if user_sids is not None:
            user_sids.discard(sid)
            if not user_sids:
                self.user_connections.pop(identity.user_id, None)
        still_online = self.is_online(identity.user_id)

        for session_id in rooms:
            payload = self._presence_payload(session_id, identity)
            await self.broadcast(session_id, ChatEvent.PRESENCE_LEFT, payload)
            if not still_online:
                await self.broadcast(session_id, ChatEvent.PRESENCE_OFFLINE, payload)
            await self._touch_last_seen(session_id, identity.user_id)

        logger.info(f"User disconnected: {identity.user_id} - Socket: {sid} ({reason})")

    async def _touch_last_seen(self, session_id: str, user_id: str) -> None:
        if self.chat_service is None:
            return
        try:
            await self.chat_service.touch_last_seen(session_id, user_id)
        except ChatError as e:
            logger.warning(f"Could not update last seen for {user_id} in session {session_id}: {e.message}")

    def _authenticated(self, sid: str) -> Optional[Connection]:
        conn = self.connections.get(sid)
        if conn is None or conn.state != ConnectionState.AUTHENTICATED:
            return None
        return conn

    # ------------------------ inbound events ------------------------

    async def on_join_session(self, sid: str, data: dict):
        """Join a session room after a membership check."""
        conn = self._authenticated(sid)
        if conn is None:
            return await self._emit_error(sid, AuthError("Not authenticated"))
        session_id = (data or {}).get("session_id")
        if not session_id:
            return await self._emit_error(sid, ValidationError("session_id is required"))
        try:
            session = await self.chat_service.get_session(session_id, conn.identity.user_id)
        except ChatError as e:
            return await self._emit_error(sid, e)

        room = str(session.id)
        self.join_room(sid, room)
        logger.info(f"User {conn.identity.user_id} joined session {room}")
        ack = {"session_id": room, "is_active": session.is_active}
        await self.sio.emit(ChatEvent.SESSION_JOINED, ack, to=sid)
        await self.broadcast(room, ChatEvent.PRESENCE_JOINED, self._presence_payload(room, conn.identity), skip_sid=sid)
        return {"ok": True, **ack}

    async def on_leave_session(self, sid: str, data: dict):
        conn = self._authenticated(sid)
        if conn is None:
            return await self._emit_error(sid, AuthError("Not authenticated"))
        session_id = str((data or {}).get("session_id") or "")
        if not self.leave_room(sid, session_id):
            return {"ok": False}
        logger.info(f"Socket {sid} left session {session_id}")
        await self.sio.emit(ChatEvent.SESSION_LEFT, {"session_id": session_id}, to=sid)
        await self.broadcast(session_id, ChatEvent.PRESENCE_LEFT, self._presence_payload(session_id, conn.identity))
        await self._touch_last_seen(session_id, conn.identity.user_id)
        return {"ok": True, "session_id": session_id}

    async def on_typing(self, sid: str, data: dict) -> None:
        """Relay an ephemeral typing signal to the other members; nothing is stored."""
        conn = self._authenticated(sid)
        if conn is None:
            await self._emit_error(sid, AuthError("Not authenticated"))
            return
        session_id = str((data or {}).get("session_id") or "")
        if session_id not in conn.rooms:
            await self._emit_error(sid, ValidationError("Join the conversation before sending typing signals"))
            return
        payload = self._presence_payload(session_id, conn.identity)
        payload["is_typing"] = bool((data or {}).get("is_typing"))
        await self.broadcast(session_id, ChatEvent.PRESENCE_TYPING, payload, skip_sid=sid)

    async def on_send_message(self, sid: str, data: dict):
        """Submit a message over the live channel (same rules as the REST endpoint)."""
        conn = self._authenticated(sid)
        if conn is None:
            return await self._emit_error(sid, AuthError("Not authenticated"))
        data = data or {}
        try:
            try:
                content_type = ContentType(data.get("content_type") or ContentType.TEXT.value)
            except ValueError:
                raise ValidationError("Unsupported content type")
            attachments = _parse_attachments(data.get("attachments"))
            message = await self.chat_service.post_message(
                data.get("session_id"),
                conn.identity,
                data.get("content", ""),
                content_type=content_type,
                reply_to_message_id=data.get("reply_to_message_id"),
                attachments=attachments,
                client_message_id=data.get("client_message_id"),
            )
        except ChatError as e:
            return await self._emit_error(sid, e)
        except Exception as e:
            logger.error(f"Error sending message from {sid}: {e}", exc_info=True)
            return await self._emit_error(sid, ChatError("Failed to send message"))

        out = ChatMessageOut.from_document(message).model_dump(mode="json")
        await self.sio.emit(ChatEvent.MESSAGE_SENT, {"message": out}, to=sid)
        return {"ok": True, "message": out}

    async def on_mark_read(self, sid: str, data: dict):
        conn = self._authenticated(sid)
        if conn is None:
            return await self._emit_error(sid, AuthError("Not authenticated"))
        session_id = (data or {}).get("session_id")
        if not session_id:
            return await self._emit_error(sid, ValidationError("session_id is required"))
        try:
            count = await self.chat_service.mark_read(session_id, conn.identity)
        except ChatError as e:
            return await self._emit_error(sid, e)
        except Exception as e:
            logger.error(f"Error marking messages as read for {sid}: {e}", exc_info=True)
            return await self._emit_error(sid, ChatError("Failed to mark messages as read"))

        ack = {"session_id": str(session_id), "marked_count": count}
        await self.sio.emit(ChatEvent.MARKED_READ, ack, to=sid)
        return {"ok": True, **ack}
