"""
tests/unit/test_chat_adapter.py — Chat Session Adapter Tests

The adapter against a stub session (ordering, loading indicator, error
bubbles) and once end-to-end through a real GatewaySession.
"""

import asyncio

import pytest

from webot.chat.adapter import ChatSessionAdapter
from webot.chat.view import ChatMessage, RecordingChatView
from webot.exceptions import RemoteError
from webot.gateway.dispatcher import EventDispatcher
from webot.gateway.protocol import ChatEventPayload, ChatHistoryResponse, EventFrame
from webot.gateway.session import GatewaySession


class StubSession:
    """Just enough of GatewaySession for the adapter."""

    def __init__(self):
        self.dispatcher = EventDispatcher()
        self.is_connected = True
        self.sent: list[tuple[str, str]] = []
        self.ack = {}
        self.error = None
        self.history = None
        self.history_error = None
        self.history_limit = None

    def on_chat_event(self, callback):
        return self.dispatcher.subscribe_chat(callback)

    def on_disconnect(self, callback):
        return self.dispatcher.disconnects.add(callback)

    def on_connect(self, callback):
        return self.dispatcher.connects.add(callback)

    async def send_chat_message(self, message, idempotency_key=None, session_key=None):
        self.sent.append((message, idempotency_key))
        if self.error is not None:
            raise self.error
        return self.ack

    async def get_chat_history(self, limit=None, before=None, after=None, session_key=None):
        self.history_limit = limit
        if self.history_error is not None:
            raise self.history_error
        return self.history

    # -- server side ----------------------------------------------------------

    def chat(self, state, text=None, error_message=None):
        payload = {"runId": "run-1", "sessionKey": "webchat-abc", "seq": 1, "state": state}
        if text is not None:
            payload["message"] = {"role": "assistant", "content": [{"type": "text", "text": text}]}
        if error_message is not None:
            payload["errorMessage"] = error_message
        self.dispatcher.dispatch(EventFrame(event="chat", payload=payload))


@pytest.fixture
def stub():
    return StubSession()


@pytest.fixture
def view():
    return RecordingChatView()


# ─────────────────────────────────────────────────────────────────────────────
# History
# ─────────────────────────────────────────────────────────────────────────────

class TestHistory:
    @pytest.mark.asyncio
    async def test_history_rendered_oldest_first(self, stub, view):
        stub.history = ChatHistoryResponse.from_payload({
            "sessionKey": "webchat-abc",
            "sessionId": "s",
            "messages": [
                {"id": "3", "message": {"role": "assistant", "content": [{"type": "text", "text": "third"}]}},
                {"id": "2", "message": {"role": "user", "content": [{"type": "text", "text": "second"}]}},
                {"id": "1", "message": {"role": "user", "content": [{"type": "text", "text": "first"}]}},
            ],
        })
        adapter = ChatSessionAdapter(stub, view, history_limit=25)
        assert await adapter.load_history() == 3
        assert view.transcript == [("user", "first"), ("user", "second"), ("assistant", "third")]
        assert stub.history_limit == 25

    @pytest.mark.asyncio
    async def test_history_keeps_server_timestamps(self, stub, view):
        stub.history = ChatHistoryResponse.from_payload({
            "messages": [{"id": "1", "message": {"role": "user", "content": "hi", "timestamp": 1700000000000}}],
        })
        adapter = ChatSessionAdapter(stub, view)
        await adapter.load_history()
        assert view.messages[0].timestamp == 1700000000.0

    @pytest.mark.asyncio
    async def test_history_rejected_by_gateway_renders_nothing(self, stub, view):
        stub.history_error = RemoteError(500, "boom")
        adapter = ChatSessionAdapter(stub, view)
        assert await adapter.load_history() == 0
        assert view.messages == []

    @pytest.mark.asyncio
    async def test_missing_history_renders_nothing(self, stub, view):
        adapter = ChatSessionAdapter(stub, view)
        assert await adapter.load_history() == 0
        assert view.messages == []

    @pytest.mark.asyncio
    async def test_connect_sets_status_and_loads_history(self, stub, view):
        stub.history = ChatHistoryResponse.from_payload({"messages": []})
        ChatSessionAdapter(stub, view, history_limit=10)
        stub.dispatcher.connects.notify()
        await asyncio.sleep(0.01)
        assert view.status == "connected"
        assert stub.history_limit == 10


# ─────────────────────────────────────────────────────────────────────────────
# Chat events
# ─────────────────────────────────────────────────────────────────────────────

class TestChatEvents:
    def test_final_renders_assistant_message(self, stub, view):
        ChatSessionAdapter(stub, view)
        stub.chat("final", text="Hello world")
        assert view.transcript == [("assistant", "Hello world")]

    def test_error_renders_error_bubble(self, stub, view):
        ChatSessionAdapter(stub, view)
        stub.chat("error", error_message="model overloaded")
        assert view.transcript == [("assistant", "Error: model overloaded")]

    def test_progress_states_render_nothing(self, stub, view):
        ChatSessionAdapter(stub, view)
        stub.chat("started")
        stub.chat("streaming", text="Hel")
        assert view.messages == []

    def test_events_for_other_sessions_still_rendered(self, stub, view):
        ChatSessionAdapter(stub, view)
        stub.dispatcher.chat_events.notify(ChatEventPayload.from_payload({
            "runId": "r", "sessionKey": "someone-else", "state": "final", "message": {"role": "assistant", "content": "x"},
        }))
        assert view.transcript == [("assistant", "x")]

    def test_close_detaches(self, stub, view):
        adapter = ChatSessionAdapter(stub, view)
        adapter.close()
        stub.chat("final", text="ignored")
        assert view.messages == []


# ─────────────────────────────────────────────────────────────────────────────
# Sending
# ─────────────────────────────────────────────────────────────────────────────

class TestSendMessage:
    @pytest.mark.asyncio
    async def test_optimistic_user_message_and_loading(self, stub, view):
        adapter = ChatSessionAdapter(stub, view)
        assert await adapter.send_message("  hi there  ") is True
        assert view.transcript == [("user", "hi there")]
        assert view.loading is True
        assert adapter.loading is True
        assert stub.sent[0][0] == "hi there"

    @pytest.mark.asyncio
    async def test_final_clears_loading(self, stub, view):
        adapter = ChatSessionAdapter(stub, view)
        await adapter.send_message("hi")
        stub.chat("final", text="Hello world")
        assert view.transcript == [("user", "hi"), ("assistant", "Hello world")]
        assert view.loading is False
        assert not adapter.loading

    @pytest.mark.asyncio
    async def test_error_event_clears_loading(self, stub, view):
        adapter = ChatSessionAdapter(stub, view)
        await adapter.send_message("hi")
        stub.chat("error", error_message="boom")
        assert view.loading is False
        assert view.transcript[-1] == ("assistant", "Error: boom")

    @pytest.mark.asyncio
    async def test_idempotency_keys_are_fresh(self, stub, view):
        adapter = ChatSessionAdapter(stub, view)
        await adapter.send_message("one")
        await adapter.send_message("two")
        keys = [key for _, key in stub.sent]
        assert len(set(keys)) == 2
        assert all(keys)

    @pytest.mark.asyncio
    async def test_empty_message_ignored(self, stub, view):
        adapter = ChatSessionAdapter(stub, view)
        assert await adapter.send_message("   ") is False
        assert stub.sent == []
        assert view.messages == []

    @pytest.mark.asyncio
    async def test_not_connected_ignored(self, stub, view):
        stub.is_connected = False
        adapter = ChatSessionAdapter(stub, view)
        assert await adapter.send_message("hi") is False
        assert stub.sent == []
        assert view.loading_shown == 0

    @pytest.mark.asyncio
    async def test_unanswered_send_clears_loading(self, stub, view):
        stub.ack = None
        adapter = ChatSessionAdapter(stub, view)
        assert await adapter.send_message("hi") is False
        assert view.loading is False
        assert view.transcript[-1] == ("assistant", "Error: No response from gateway")

    @pytest.mark.asyncio
    async def test_remote_error_clears_loading(self, stub, view):
        stub.error = RemoteError(429, "rate limited")
        adapter = ChatSessionAdapter(stub, view)
        assert await adapter.send_message("hi") is False
        assert view.loading is False
        assert view.transcript[-1] == ("assistant", "Error: rate limited")

    @pytest.mark.asyncio
    async def test_disconnect_clears_loading_once(self, stub, view):
        adapter = ChatSessionAdapter(stub, view)
        await adapter.send_message("hi")
        stub.dispatcher.disconnects.notify("Disconnected (code: 1006)")
        stub.chat("final", text="late")
        assert view.loading_shown == 1
        assert view.loading_hidden == 1
        assert view.status == "disconnected"
        assert view.status_error == "Disconnected (code: 1006)"

    @pytest.mark.asyncio
    async def test_missing_final_event_times_out(self, stub, view):
        adapter = ChatSessionAdapter(stub, view, response_timeout=0.05)
        assert await adapter.send_message("hi") is True
        assert view.loading is True
        await asyncio.sleep(0.1)
        assert view.loading is False
        assert view.loading_hidden == 1
        assert view.transcript[-1] == ("assistant", "Error: Timed out waiting for a response")

    @pytest.mark.asyncio
    async def test_final_event_cancels_response_deadline(self, stub, view):
        adapter = ChatSessionAdapter(stub, view, response_timeout=0.05)
        await adapter.send_message("hi")
        stub.chat("final", text="Hello")
        await asyncio.sleep(0.1)
        assert view.transcript == [("user", "hi"), ("assistant", "Hello")]
        assert view.loading_hidden == 1


class TestChatMessage:
    def test_labels(self):
        assert ChatMessage(role="user", content="x").label == "You"
        assert ChatMessage(role="assistant", content="x").label == "Assistant"


# ─────────────────────────────────────────────────────────────────────────────
# End to end through a real session
# ─────────────────────────────────────────────────────────────────────────────

class TestWithGatewaySession:
    @pytest.mark.asyncio
    async def test_conversation(self, gateway):
        session = GatewaySession("ws://gateway.test", transport_factory=gateway, reconnect_delay=60)
        view = RecordingChatView()
        adapter = ChatSessionAdapter(session, view)

        transport = await gateway.handshake(session)
        history_request = await gateway.next_request("chat.history")
        transport.respond(history_request["id"], {
            "sessionKey": session.session_key,
            "sessionId": "s-1",
            "messages": [
                {"id": "2", "message": {"role": "assistant", "content": [{"type": "text", "text": "Hi!"}]}},
                {"id": "1", "message": {"role": "user", "content": [{"type": "text", "text": "Hello"}]}},
            ],
        })
        await gateway.wait_until(lambda: len(view.messages) == 2)
        assert view.transcript == [("user", "Hello"), ("assistant", "Hi!")]

        send = asyncio.create_task(adapter.send_message("How are you?"))
        send_request = await gateway.next_request("chat.send")
        assert send_request["params"]["message"] == "How are you?"
        transport.respond(send_request["id"], {"runId": "run-9", "status": "started"})
        assert await send is True
        assert view.loading is True

        transport.feed({
            "type": "event",
            "event": "chat",
            "payload": {
                "runId": "run-9",
                "sessionKey": session.session_key,
                "seq": 1,
                "state": "final",
                "message": {"role": "assistant", "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " world"}]},
            },
        })
        await gateway.wait_until(lambda: len(view.messages) == 4)
        assert view.transcript[-1] == ("assistant", "Hello world")
        assert view.loading is False

        await session.disconnect()
        assert view.status == "disconnected"

    @pytest.mark.asyncio
    async def test_history_rejected_on_connect_keeps_session_up(self, gateway):
        session = GatewaySession("ws://gateway.test", transport_factory=gateway, reconnect_delay=60)
        view = RecordingChatView()
        adapter = ChatSessionAdapter(session, view, load_history_on_connect=False)
        transport = await gateway.handshake(session)

        load = asyncio.create_task(adapter.load_history())
        history_request = await gateway.next_request("chat.history")
        transport.respond(history_request["id"], ok=False, error={"code": 500, "message": "boom"})
        assert await load == 0
        assert view.messages == []
        assert session.is_connected

        await session.disconnect()
