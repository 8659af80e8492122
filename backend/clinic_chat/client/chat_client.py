"""
Async client for the chat service.

REST calls go through httpx; the live channel is a python-socketio client
authenticated with the same bearer token. Live events update the local
timelines but the REST fetch stays the source of truth: after a reconnect
every joined session is fetched again.
"""
import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
import socketio
from socketio.exceptions import SocketIOError

from clinic_chat.client.pending import PendingMessage
from clinic_chat.client.timeline import MessageTimeline
from clinic_chat.client.typing_notifier import TypingNotifier
from clinic_chat.constants import ChatEvent
from clinic_chat.utils.logger import get_logger

logger = get_logger("client")

Handler = Callable[[dict], Awaitable[None] | None]


class ChatClientError(Exception):
    def __init__(self, status_code: int, detail: Any) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.status_code == 503


class ChatClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        http: Optional[httpx.AsyncClient] = None,
        sio: Optional[socketio.AsyncClient] = None,
        socketio_path: str = "socket.io",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.socketio_path = socketio_path
        self.http = http or httpx.AsyncClient(base_url=self.base_url, timeout=10.0)
        self.http.headers["Authorization"] = f"Bearer {token}"
        self.sio = sio or socketio.AsyncClient(reconnection=True)

        self.timelines: Dict[str, MessageTimeline] = {}
        self.joined: Set[str] = set()
        self.connected = False
        self._was_connected = False
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)
        for event in (ChatEvent.MESSAGE_CREATED, ChatEvent.MESSAGE_UPDATED, ChatEvent.MESSAGE_DELETED):
            self.sio.on(event, self._message_handler(event))
        self.sio.on(ChatEvent.MESSAGES_READ, self._on_messages_read)
        for event in (
            ChatEvent.PRESENCE_JOINED,
            ChatEvent.PRESENCE_LEFT,
            ChatEvent.PRESENCE_TYPING,
            ChatEvent.PRESENCE_OFFLINE,
            ChatEvent.ERROR,
        ):
            self.sio.on(event, self._relay(event))

    # ------------------------ event plumbing ------------------------

    def on(self, event: str, handler: Handler) -> None:
        """Subscribe to a live event (or ``connection`` for connectivity changes)."""
        self._handlers[event].append(handler)

    async def _dispatch(self, event: str, data: dict) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Handler for {event} failed: {e}")

    def _relay(self, event: str):
        async def handler(data):
            await self._dispatch(event, data)
        return handler

    def timeline(self, session_id: str) -> MessageTimeline:
        if session_id not in self.timelines:
            self.timelines[session_id] = MessageTimeline(session_id)
        return self.timelines[session_id]

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _on_connect(self) -> None:
        self.connected = True
        if self._was_connected:
            self._spawn(self.resync())
        self._was_connected = True
        await self._dispatch("connection", {"connected": True})

    async def _on_disconnect(self, *args) -> None:
        # consumers fall back to polling fetch_messages while offline
        self.connected = False
        await self._dispatch("connection", {"connected": False})

    def _message_handler(self, event: str):
        async def handler(data: dict) -> None:
            message = data.get("message") or {}
            if message.get("session_id"):
                self.timeline(message["session_id"]).upsert(message)
            await self._dispatch(event, data)
        return handler

    async def _on_messages_read(self, data: dict) -> None:
        if data.get("session_id"):
            self.timeline(data["session_id"]).apply_read(data)
        await self._dispatch(ChatEvent.MESSAGES_READ, data)

    # ------------------------ connection ------------------------

    async def connect(self) -> None:
        await self.sio.connect(
            self.base_url,
            auth={"token": self.token},
            socketio_path=self.socketio_path,
        )

    async def disconnect(self) -> None:
        if self.sio.connected:
            await self.sio.disconnect()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.disconnect()
        await self.http.aclose()

    async def join(self, session_id: str) -> dict:
        ack = await self.sio.call("join_session", {"session_id": session_id})
        if ack and ack.get("ok"):
            self.joined.add(session_id)
        return ack

    async def leave(self, session_id: str) -> dict:
        self.joined.discard(session_id)
        return await self.sio.call("leave_session", {"session_id": session_id})

    async def set_typing(self, session_id: str, is_typing: bool) -> None:
        await self.sio.emit("typing", {"session_id": session_id, "is_typing": is_typing})

    def typing_notifier(self, session_id: str, idle_seconds: float = 3.0) -> TypingNotifier:
        async def send(is_typing: bool) -> None:
            await self.set_typing(session_id, is_typing)
        return TypingNotifier(send, idle_seconds=idle_seconds)

    async def resync(self) -> None:
        """Re-join rooms and refetch the newest page of every joined session."""
        for session_id in list(self.joined):
            try:
                await self.join(session_id)
                await self.fetch_messages(session_id)
            except (ChatClientError, httpx.HTTPError, SocketIOError) as e:
                logger.warning(f"Resync of session {session_id} failed: {e}")

    # ------------------------ REST ------------------------

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self.http.request(method, path, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            raise ChatClientError(response.status_code, detail)
        return response.json()

    async def list_sessions(self) -> List[dict]:
        return await self._request("GET", "/sessions")

    async def list_doctors(self) -> List[dict]:
        return await self._request("GET", "/doctors")

    async def open_session(self, counterpart_id: str, **metadata) -> dict:
        return await self._request("POST", "/sessions", json={"counterpart_id": counterpart_id, **metadata})

    async def fetch_messages(self, session_id: str, cursor: Optional[str] = None, limit: Optional[int] = None) -> dict:
        params = {k: v for k, v in {"cursor": cursor, "limit": limit}.items() if v is not None}
        page = await self._request("GET", f"/sessions/{session_id}/messages", params=params)
        self.timeline(session_id).merge(page["messages"])
        return page

    def send_message(
        self,
        session_id: str,
        content: str,
        content_type: str = "text",
        reply_to_message_id: Optional[str] = None,
    ) -> PendingMessage:
        """Return a pending message at once; the server write runs in the background."""
        pending = PendingMessage(session_id, content, content_type, reply_to_message_id=reply_to_message_id)
        self.timeline(session_id).add_pending(pending)
        self._spawn(self._submit(pending))
        return pending

    async def _submit(self, pending: PendingMessage) -> None:
        body = {
            "content": pending.content,
            "content_type": pending.content_type,
            "reply_to_message_id": pending.reply_to_message_id,
            "client_message_id": pending.client_message_id,
        }
        try:
            message = await self._request("POST", f"/sessions/{pending.session_id}/messages", json=body)
        except (ChatClientError, httpx.HTTPError) as e:
            logger.warning(f"Message {pending.client_message_id} was not accepted: {e}")
            pending.fail(e)
            return
        pending.confirm(message)

    async def retry(self, pending: PendingMessage) -> PendingMessage:
        """Resubmit a failed message under the same client id so the server can deduplicate."""
        fresh = PendingMessage(
            pending.session_id,
            pending.content,
            pending.content_type,
            pending.client_message_id,
            reply_to_message_id=pending.reply_to_message_id,
        )
        self.timeline(pending.session_id).add_pending(fresh)
        await self._submit(fresh)
        return fresh

    async def mark_read(self, session_id: str) -> dict:
        return await self._request("PUT", f"/sessions/{session_id}/read")

    async def edit_message(self, message_id: str, content: str) -> dict:
        message = await self._request("PUT", f"/messages/{message_id}", json={"content": content})
        self.timeline(message["session_id"]).upsert(message, authoritative=True)
        return message

    async def delete_message(self, message_id: str) -> dict:
        message = await self._request("DELETE", f"/messages/{message_id}")
        self.timeline(message["session_id"]).upsert(message, authoritative=True)
        return message
