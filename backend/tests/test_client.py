"""Client library tests: local timeline, pending sends, typing debounce and the HTTP client."""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from clinic_chat.client import (
    ChatClient,
    ChatClientError,
    MessageTimeline,
    PendingMessage,
    PendingState,
    TypingNotifier,
)
from clinic_chat.constants import ChatEvent

SESSION = "65a0c0ffee00000000000001"


def make_message(message_id: str, created_at: str, **overrides) -> dict:
    message = {
        "id": message_id,
        "session_id": SESSION,
        "sender_id": "patient-1",
        "sender_role": "patient",
        "sender_display_name": "Sara Ali",
        "content": f"content {message_id}",
        "content_type": "text",
        "attachments": [],
        "delivery_state": "delivered",
        "read_receipts": [],
        "reply_to": None,
        "is_edited": False,
        "edited_at": None,
        "is_deleted": False,
        "deleted_at": None,
        "client_message_id": None,
        "created_at": created_at,
    }
    message.update(overrides)
    return message


class TestMessageTimeline:
    def test_messages_are_ordered_by_creation(self):
        timeline = MessageTimeline(SESSION)
        timeline.upsert(make_message("b", "2026-01-05T09:00:02+00:00"))
        timeline.upsert(make_message("a", "2026-01-05T09:00:01+00:00"))
        timeline.upsert(make_message("c", "2026-01-05T09:00:02+00:00"))

        assert [m["id"] for m in timeline.messages()] == ["a", "b", "c"]

    def test_stale_live_event_does_not_override_newer_copy(self):
        timeline = MessageTimeline(SESSION)
        timeline.merge([make_message("a", "2026-01-05T09:00:00+00:00", delivery_state="read")])

        timeline.upsert(make_message("a", "2026-01-05T09:00:00+00:00", delivery_state="delivered"))

        assert timeline.get("a")["delivery_state"] == "read"

    def test_edit_and_delete_events_apply(self):
        timeline = MessageTimeline(SESSION)
        timeline.upsert(make_message("a", "2026-01-05T09:00:00+00:00"))

        timeline.upsert(
            make_message("a", "2026-01-05T09:00:00+00:00", content="fixed", is_edited=True,
                         edited_at="2026-01-05T09:01:00+00:00")
        )
        assert timeline.get("a")["content"] == "fixed"

        timeline.upsert(make_message("a", "2026-01-05T09:00:00+00:00", content="This message was deleted",
                                     is_deleted=True))
        assert timeline.get("a")["is_deleted"] is True

    def test_fetched_page_is_authoritative(self):
        timeline = MessageTimeline(SESSION)
        timeline.upsert(make_message("a", "2026-01-05T09:00:00+00:00", delivery_state="read"))

        timeline.merge([make_message("a", "2026-01-05T09:00:00+00:00", delivery_state="delivered")])

        assert timeline.get("a")["delivery_state"] == "delivered"

    def test_apply_read_marks_only_messages_from_others(self):
        timeline = MessageTimeline(SESSION)
        timeline.upsert(make_message("a", "2026-01-05T09:00:00+00:00"))
        timeline.upsert(make_message("b", "2026-01-05T09:00:01+00:00", sender_id="doctor-1", sender_role="doctor"))

        event = {"session_id": SESSION, "reader_id": "doctor-1", "reader_role": "doctor",
                 "read_at": "2026-01-05T09:05:00+00:00", "count": 1}
        timeline.apply_read(event)
        timeline.apply_read(event)

        assert timeline.get("a")["delivery_state"] == "read"
        assert len(timeline.get("a")["read_receipts"]) == 1
        assert timeline.get("b")["read_receipts"] == []

    async def test_confirmed_pending_message_lands_in_timeline(self):
        timeline = MessageTimeline(SESSION)
        pending = PendingMessage(SESSION, "hello")
        timeline.add_pending(pending)
        assert timeline.pending == [pending]

        pending.confirm(make_message("a", "2026-01-05T09:00:00+00:00", client_message_id=pending.client_message_id))

        assert timeline.pending == []
        assert timeline.get("a") is not None

    async def test_live_copy_clears_pending_entry(self):
        timeline = MessageTimeline(SESSION)
        pending = PendingMessage(SESSION, "hello")
        timeline.add_pending(pending)

        timeline.upsert(make_message("a", "2026-01-05T09:00:00+00:00", client_message_id=pending.client_message_id))

        assert timeline.pending == []


class TestPendingMessage:
    async def test_confirm(self):
        pending = PendingMessage(SESSION, "hello")
        seen = []
        pending.add_done_callback(seen.append)

        pending.confirm({"id": "a"})

        assert pending.state == PendingState.CONFIRMED
        assert await pending.wait(1) == {"id": "a"}
        assert seen == [pending]

    async def test_failure_is_raised_to_the_waiter(self):
        pending = PendingMessage(SESSION, "hello")

        pending.fail(ChatClientError(503, "Store unavailable"))
        pending.confirm({"id": "late"})

        assert pending.state == PendingState.FAILED
        with pytest.raises(ChatClientError):
            await pending.wait(1)

    async def test_wait_times_out(self):
        pending = PendingMessage(SESSION, "hello")

        with pytest.raises(asyncio.TimeoutError):
            await pending.wait(0.01)


class TestTypingNotifier:
    async def test_debounce(self):
        sent = []

        async def send(is_typing):
            sent.append(is_typing)

        notifier = TypingNotifier(send, idle_seconds=0.05)
        await notifier.keystroke()
        await notifier.keystroke()
        await notifier.keystroke()
        assert sent == [True]

        await asyncio.sleep(0.15)
        assert sent == [True, False]

    async def test_stop_sends_idle_once(self):
        sent = []

        async def send(is_typing):
            sent.append(is_typing)

        notifier = TypingNotifier(send, idle_seconds=10)
        await notifier.keystroke()
        await notifier.stop()
        await notifier.stop()

        assert sent == [True, False]


class FakeServer:
    """httpx.MockTransport handler with a tiny in-memory message log."""

    def __init__(self) -> None:
        self.requests = []
        self.messages = []
        self.fail_posts = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path == "/sessions":
            return httpx.Response(200, json=[])
        if request.method == "GET" and path == "/doctors":
            return httpx.Response(200, json=[{"user_id": "doctor-1", "display_name": "Hassan Kareem",
                                              "specialization": "Orthodontics", "image_url": None}])
        if request.method == "POST" and path == f"/sessions/{SESSION}/messages":
            if self.fail_posts:
                self.fail_posts -= 1
                return httpx.Response(503, json={"detail": "Store unavailable", "status_code": 503})
            body = json.loads(request.content)
            for existing in self.messages:
                if existing["client_message_id"] == body["client_message_id"]:
                    return httpx.Response(201, json=existing)
            message = make_message(
                f"m{len(self.messages)}",
                f"2026-01-05T09:00:0{len(self.messages)}+00:00",
                content=body["content"],
                client_message_id=body["client_message_id"],
            )
            self.messages.append(message)
            return httpx.Response(201, json=message)
        if request.method == "GET" and path == f"/sessions/{SESSION}/messages":
            return httpx.Response(200, json={"messages": self.messages, "next_cursor": None})
        if request.method == "PUT" and path == f"/sessions/{SESSION}/read":
            return httpx.Response(200, json={"session_id": SESSION, "marked_count": 0})
        return httpx.Response(404, json={"detail": "Conversation not found", "status_code": 404})


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
async def client(server):
    http = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://chat.test")
    chat = ChatClient("http://chat.test", "token-123", http=http)
    chat.sio.emit = AsyncMock()
    chat.sio.call = AsyncMock(return_value={"ok": True, "session_id": SESSION, "is_active": True})
    yield chat
    await chat.close()


async def trigger(chat: ChatClient, event: str, *args):
    await chat.sio.handlers["/"][event](*args)


class TestChatClient:
    async def test_requests_carry_bearer_token(self, client, server):
        assert await client.list_sessions() == []

        assert server.requests[0].headers["authorization"] == "Bearer token-123"

    async def test_http_errors_are_raised(self, client):
        with pytest.raises(ChatClientError) as excinfo:
            await client.fetch_messages("unknown")

        assert excinfo.value.status_code == 404
        assert excinfo.value.detail == "Conversation not found"
        assert not excinfo.value.retryable

    async def test_send_message_is_two_phase(self, client, server):
        pending = client.send_message(SESSION, "hello")
        assert pending.state == PendingState.PENDING
        assert client.timeline(SESSION).pending == [pending]

        message = await pending.wait(1)

        assert message["content"] == "hello"
        assert message["client_message_id"] == pending.client_message_id
        assert client.timeline(SESSION).get(message["id"]) is not None
        assert client.timeline(SESSION).pending == []

    async def test_failed_send_is_visible_and_retryable(self, client, server):
        server.fail_posts = 1
        pending = client.send_message(SESSION, "hello")

        with pytest.raises(ChatClientError) as excinfo:
            await pending.wait(1)
        assert excinfo.value.retryable
        assert pending.state == PendingState.FAILED
        assert len(client.timeline(SESSION)) == 0

        retried = await client.retry(pending)

        assert retried.state == PendingState.CONFIRMED
        assert retried.client_message_id == pending.client_message_id
        assert len(server.messages) == 1

    async def test_fetch_merges_into_timeline(self, client, server):
        server.messages = [
            make_message("a", "2026-01-05T09:00:00+00:00"),
            make_message("b", "2026-01-05T09:00:01+00:00"),
        ]

        page = await client.fetch_messages(SESSION)

        assert page["next_cursor"] is None
        assert [m["id"] for m in client.timeline(SESSION).messages()] == ["a", "b"]

    async def test_live_events_update_timeline_and_reach_handlers(self, client):
        received = []
        client.on(ChatEvent.MESSAGE_CREATED, received.append)

        await trigger(client, ChatEvent.MESSAGE_CREATED, {"message": make_message("a", "2026-01-05T09:00:00+00:00")})
        await trigger(
            client,
            ChatEvent.MESSAGES_READ,
            {"session_id": SESSION, "reader_id": "doctor-1", "reader_role": "doctor",
             "read_at": "2026-01-05T09:01:00+00:00", "count": 1},
        )

        assert len(received) == 1
        assert client.timeline(SESSION).get("a")["delivery_state"] == "read"

    async def test_failing_handler_does_not_break_dispatch(self, client):
        seen = []

        def broken(data):
            raise RuntimeError("ui crashed")

        client.on(ChatEvent.PRESENCE_TYPING, broken)
        client.on(ChatEvent.PRESENCE_TYPING, seen.append)

        await trigger(client, ChatEvent.PRESENCE_TYPING, {"session_id": SESSION, "is_typing": True})

        assert seen == [{"session_id": SESSION, "is_typing": True}]

    async def test_reconnect_resyncs_joined_sessions(self, client, server):
        statuses = []
        client.on("connection", statuses.append)
        await client.join(SESSION)
        server.messages = [make_message("a", "2026-01-05T09:00:00+00:00")]

        await trigger(client, "connect")
        await trigger(client, "disconnect")
        await trigger(client, "connect")
        await asyncio.gather(*list(client._tasks))

        assert statuses == [{"connected": True}, {"connected": False}, {"connected": True}]
        assert client.timeline(SESSION).get("a") is not None
        assert client.sio.call.await_count == 2

    async def test_typing_notifier_emits_over_socket(self, client):
        notifier = client.typing_notifier(SESSION, idle_seconds=10)

        await notifier.keystroke()
        await notifier.stop()

        client.sio.emit.assert_any_await("typing", {"session_id": SESSION, "is_typing": True})
        client.sio.emit.assert_any_await("typing", {"session_id": SESSION, "is_typing": False})

    async def test_mark_read(self, client, server):
        assert await client.mark_read(SESSION) == {"session_id": SESSION, "marked_count": 0}

        assert server.requests[-1].method == "PUT"

    async def test_retried_reply_keeps_its_target(self, client, server):
        server.fail_posts = 1
        pending = client.send_message(SESSION, "yes, after lunch", reply_to_message_id="m-question")
        with pytest.raises(ChatClientError):
            await pending.wait(1)

        retried = await client.retry(pending)

        assert retried.state == PendingState.CONFIRMED
        assert retried.reply_to_message_id == "m-question"
        bodies = [json.loads(r.content) for r in server.requests if r.method == "POST"]
        assert [b["reply_to_message_id"] for b in bodies] == ["m-question", "m-question"]

    async def test_list_doctors(self, client):
        [doctor] = await client.list_doctors()

        assert doctor["display_name"] == "Hassan Kareem"
