"""
chat/adapter.py — Chat Session Adapter

Turns gateway traffic into ordered ChatView operations:

  - on connect: request `chat.history` and replay it oldest-first
    (the gateway returns newest-first)
  - on `chat` events: `final` renders the joined message text, `error`
    renders an error bubble; both clear the loading indicator
  - send_message(): optimistic user bubble, loading indicator, then
    `chat.send` with a fresh idempotency key

Every loading indicator shown is cleared by exactly one of: final event,
error (event or failed send), timeout, or disconnect. The timeout covers
both the `chat.send` acknowledgement and, once acknowledged, the wait for
the run's final or error event.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Optional

from webot.chat.view import ChatMessage, ChatView
from webot.exceptions import RemoteError
from webot.gateway.protocol import ChatEventPayload, ChatState
from webot.gateway.session import GatewaySession
from webot.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 50
DEFAULT_RESPONSE_TIMEOUT = 120.0


class ChatSessionAdapter:
    """Binds one GatewaySession to one ChatView."""

    def __init__(
        self,
        session: GatewaySession,
        view: ChatView,
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        load_history_on_connect: bool = True,
        response_timeout: Optional[float] = DEFAULT_RESPONSE_TIMEOUT,
    ):
        self._session = session
        self._view = view
        self._history_limit = history_limit
        self._response_timeout = response_timeout
        self._response_timer: Optional[asyncio.TimerHandle] = None
        self._loading = False
        self._unsubscribe = [
            session.on_chat_event(self.handle_chat_event),
            session.on_disconnect(self.handle_disconnect),
        ]
        if load_history_on_connect:
            self._unsubscribe.append(session.on_connect(self.handle_connect))

    @property
    def loading(self) -> bool:
        return self._loading

    def close(self) -> None:
        """Detach from the session."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        self._cancel_response_timer()

    # ─────────────────────────────────────────────────────────────────────────
    # Loading indicator
    # ─────────────────────────────────────────────────────────────────────────

    def _show_loading(self) -> None:
        if self._loading:
            return
        self._loading = True
        self._view.show_loading()

    def _clear_loading(self) -> bool:
        self._cancel_response_timer()
        if not self._loading:
            return False
        self._loading = False
        self._view.hide_loading()
        return True

    def _arm_response_timer(self) -> None:
        """Bound the wait for the acknowledged run's final or error event."""
        if not self._loading or not self._response_timeout:
            return
        self._cancel_response_timer()
        self._response_timer = asyncio.get_running_loop().call_later(
            self._response_timeout, self._on_response_timeout,
        )

    def _cancel_response_timer(self) -> None:
        if self._response_timer is not None:
            self._response_timer.cancel()
            self._response_timer = None

    def _on_response_timeout(self) -> None:
        self._response_timer = None
        log.warning("chat.response_timeout", timeout=self._response_timeout)
        if self._clear_loading():
            self._render_error("Timed out waiting for a response")

    def _render_error(self, text: str) -> None:
        self._view.add_message(ChatMessage(role="assistant", content=f"Error: {text}"))

    # ─────────────────────────────────────────────────────────────────────────
    # Session callbacks
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_connect(self) -> None:
        self._view.set_status("connected")
        await self.load_history()

    def handle_disconnect(self, error: Optional[str] = None) -> None:
        self._clear_loading()
        self._view.set_status("disconnected", error)

    def handle_chat_event(self, payload: ChatEventPayload) -> None:
        if payload.state == ChatState.FINAL.value:
            text = payload.message.text if payload.message else ""
            role = payload.message.role if payload.message else "assistant"
            log.info("chat.response", run_id=payload.run_id, chars=len(text))
            self._view.add_message(ChatMessage(role=role, content=text))
            self._clear_loading()
        elif payload.state == ChatState.ERROR.value:
            log.warning("chat.run_failed", run_id=payload.run_id, error=payload.error_message)
            self._clear_loading()
            self._render_error(payload.error_message or "Unknown error")
        else:
            log.debug("chat.progress", run_id=payload.run_id, state=payload.state, seq=payload.seq)

    # ─────────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────────

    async def load_history(self, limit: Optional[int] = None) -> int:
        """Replay stored messages in chronological order. Returns the count rendered."""
        try:
            history = await self._session.get_chat_history(limit=limit or self._history_limit)
        except RemoteError as e:
            log.warning("chat.history_failed", code=e.code, error=e.message)
            return 0
        if history is None:
            log.warning("chat.history_unavailable")
            return 0

        log.info("chat.history_loaded", count=len(history.messages))
        for entry in reversed(history.messages):
            body = entry.message
            role = body.role if body else "unknown"
            content = body.text if body else ""
            timestamp = body.timestamp if body and body.timestamp is not None else None
            if timestamp is not None:
                message = ChatMessage(role=role, content=content, timestamp=timestamp)
            else:
                message = ChatMessage(role=role, content=content)
            self._view.add_message(message, scroll=False)
        return len(history.messages)

    async def send_message(self, text: str) -> bool:
        """
        Send a user message. Returns True when the gateway acknowledged it.

        Empty input, or input while not connected, is ignored.
        """
        content = text.strip()
        if not content or not self._session.is_connected:
            log.info("chat.send_skipped", has_content=bool(content), connected=self._session.is_connected)
            return False

        self._view.add_message(ChatMessage(role="user", content=content))
        self._show_loading()

        idempotency_key = str(uuid.uuid4())
        log.info("chat.send", chars=len(content), idempotency_key=idempotency_key)
        try:
            ack = await self._session.send_chat_message(content, idempotency_key=idempotency_key)
        except RemoteError as e:
            log.error("chat.send_failed", code=e.code, error=e.message)
            if self._clear_loading():
                self._render_error(e.message)
            return False

        if ack is None:
            # Timed out, or the session dropped and disconnect already cleared it.
            if self._clear_loading():
                self._render_error("No response from gateway")
            return False
        self._arm_response_timer()
        return True
