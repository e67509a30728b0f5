"""
gateway/session.py — Gateway Session

The stateful client for one logical gateway connection. Opens the
WebSocket, answers the server's `connect.challenge` with a `connect`
request, and only counts as connected once the response carries
`payload.type == "hello-ok"`. After that it multiplexes request/response
pairs through the RequestCorrelator and pushes events through the
EventDispatcher.

When the transport drops for any reason other than disconnect(), exactly
one reconnect is scheduled after `reconnect_delay` seconds (optionally with
bounded exponential backoff and jitter).

Usage:
    async with GatewaySession("ws://127.0.0.1:18789", token="…") as session:
        session.on_connect(lambda: print("hello-ok"))
        payload = await session.send_with_response(make_request("chat.history", {...}))
"""

from __future__ import annotations

import asyncio
import random
import uuid
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.asyncio.client import connect as ws_connect

from webot.exceptions import ConnectionClosed, DecodeError, TimeoutExceeded, TransportError
from webot.gateway.correlator import DEFAULT_TIMEOUT_SECONDS, RequestCorrelator
from webot.gateway.dispatcher import EventDispatcher
from webot.gateway.protocol import (
    ChatEventPayload,
    ChatHistoryResponse,
    EventFrame,
    EventName,
    Frame,
    Method,
    RequestFrame,
    ResponseFrame,
    build_handshake_params,
    chat_history_params,
    chat_send_params,
    encode,
    make_request,
    try_decode,
)
from webot.gateway.state import (
    ConnectionState,
    Effect,
    SessionInput,
    SessionState,
    Transition,
    status_for,
    transition,
)
from webot.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_GATEWAY_URL = "ws://127.0.0.1:18789"
DEFAULT_RECONNECT_DELAY = 3.0
DEFAULT_MAX_RECONNECT_DELAY = 30.0

# Anything with the websockets ClientConnection surface:
# `await send(str)`, `await close()`, `async for message in transport`,
# and a `close_code` attribute once closed.
TransportFactory = Callable[[str], Awaitable[Any]]


def _default_transport_factory(url: str) -> Awaitable[Any]:
    return ws_connect(url, max_size=2**20)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class GatewaySession:
    """
    Connection state machine, request correlation and event routing for
    a single gateway socket.

    Async context manager — connects on enter, disconnects on exit.
    """

    def __init__(
        self,
        url: str = DEFAULT_GATEWAY_URL,
        *,
        token: Optional[str] = None,
        password: Optional[str] = None,
        handshake_params: Optional[dict[str, Any]] = None,
        request_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        reconnect_backoff: bool = False,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        session_key: Optional[str] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self._url = url
        self._handshake_params = handshake_params or build_handshake_params(
            token=token, password=password,
        )
        self._request_timeout = request_timeout
        self._reconnect_delay = reconnect_delay
        self._reconnect_backoff = reconnect_backoff
        self._max_reconnect_delay = max(max_reconnect_delay, reconnect_delay)
        self._reconnect_attempts = 0
        self._session_key = session_key or f"webchat-{uuid.uuid4().hex[:8]}"
        self._transport_factory = transport_factory or _default_transport_factory

        self._correlator = RequestCorrelator(default_timeout=request_timeout)
        self._dispatcher = EventDispatcher()

        self._state = SessionState.DISCONNECTED
        self._connection = ConnectionState()
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._open_waiter: Optional[asyncio.Future] = None
        self._attempt = 0
        self._handshake_id: Optional[str] = None
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, **overrides: Any) -> "GatewaySession":
        """Build a session from a webot.config.settings.Settings instance."""
        gw = settings.gateway
        client = settings.client
        params = build_handshake_params(
            min_protocol=gw.min_protocol,
            max_protocol=gw.max_protocol,
            client_id=client.id,
            display_name=client.display_name,
            version=client.version,
            platform=client.platform,
            mode=client.mode,
            token=settings.effective_gateway_token or None,
            password=settings.effective_gateway_password,
            role=gw.role,
            scopes=gw.scopes,
        )
        kwargs: dict[str, Any] = dict(
            handshake_params=params,
            request_timeout=gw.request_timeout_seconds,
            reconnect_delay=gw.reconnect_delay_seconds,
            reconnect_backoff=gw.reconnect_backoff,
            max_reconnect_delay=gw.max_reconnect_delay_seconds,
            session_key=settings.chat.session_key,
        )
        kwargs.update(overrides)
        return cls(settings.effective_gateway_url, **kwargs)

    async def __aenter__(self) -> "GatewaySession":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.disconnect()

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        """Snapshot of the observable connection state (immutable copy)."""
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def url(self) -> str:
        return self._url

    @property
    def correlator(self) -> RequestCorrelator:
        return self._correlator

    @property
    def session_key(self) -> str:
        return self._session_key

    def set_session_key(self, session_key: str) -> None:
        self._session_key = session_key
        log.info("gateway.session_key_updated", session_key=session_key)

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # ─────────────────────────────────────────────────────────────────────────
    # Observers
    # ─────────────────────────────────────────────────────────────────────────

    def on_connect(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Called after a successful hello-ok handshake."""
        return self._dispatcher.connects.add(callback)

    def on_disconnect(self, callback: Callable[[Optional[str]], Any]) -> Callable[[], None]:
        """Called with the last error string whenever the session drops."""
        return self._dispatcher.disconnects.add(callback)

    def on_event(self, callback: Callable[[EventFrame], Any]) -> Callable[[], None]:
        return self._dispatcher.subscribe(callback)

    def on_chat_event(self, callback: Callable[[ChatEventPayload], Any]) -> Callable[[], None]:
        return self._dispatcher.subscribe_chat(callback)

    # ─────────────────────────────────────────────────────────────────────────
    # Connection lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self, url: Optional[str] = None) -> None:
        """
        Open the transport. Returns once the socket is open; authentication
        completes later and is signalled through on_connect observers.

        Idempotent while connecting or connected. Raises TransportError if
        the socket cannot be opened (a reconnect is scheduled regardless).
        """
        if self._state is not SessionState.DISCONNECTED:
            log.debug("gateway.connect_ignored", state=self._state.value)
            if self._open_waiter is not None and not self._open_waiter.done():
                await asyncio.shield(self._open_waiter)
            return

        if url:
            self._url = url

        if self._closing is not None:
            await self._closing

        self._apply(SessionInput.CONNECT_REQUESTED)
        self._attempt += 1
        attempt = self._attempt
        waiter = asyncio.get_running_loop().create_future()
        self._open_waiter = waiter
        log.info("gateway.connecting", url=self._url, attempt=attempt)

        try:
            ws = await self._transport_factory(self._url)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            waiter.set_result(False)
            if attempt == self._attempt:
                self._apply(SessionInput.TRANSPORT_FAILED, error=f"Connection error: {e}")
            log.warning("gateway.connect_failed", url=self._url, error=str(e))
            raise TransportError(f"Cannot connect to {self._url}: {e}") from e

        if attempt != self._attempt or self._state is not SessionState.CONNECTING:
            # disconnect() ran while the socket was opening
            waiter.set_result(False)
            await self._close_quietly(ws)
            return

        self._ws = ws
        self._apply(SessionInput.TRANSPORT_OPENED)
        self._reader_task = asyncio.create_task(self._reader_loop(ws))
        waiter.set_result(True)
        log.info("gateway.transport_open", url=self._url)

    async def disconnect(self, reason: str = "Manually disconnected") -> None:
        """
        Close the transport, fail every pending request with ConnectionClosed,
        cancel any scheduled reconnect and stay disconnected.
        """
        self._apply(SessionInput.DISCONNECT_REQUESTED, error=reason)
        if self._closing is not None:
            await self._closing
        log.info("gateway.disconnected", reason=reason)

    async def reconnect(self) -> None:
        await self.disconnect(reason="Reconnecting")
        await self.connect()

    # ─────────────────────────────────────────────────────────────────────────
    # State machine driver
    # ─────────────────────────────────────────────────────────────────────────

    def _apply(self, event: SessionInput, *, error: Optional[str] = None) -> Optional[Transition]:
        step = transition(self._state, event)
        if step is None:
            log.debug("gateway.input_ignored", state=self._state.value, input=event.value)
            return None

        previous = self._state
        self._state = step.next_state

        changes: dict[str, Any] = {"status": status_for(step.next_state)}
        if error:
            changes["last_error"] = error
        if step.next_state is SessionState.DISCONNECTED and previous is not SessionState.DISCONNECTED:
            changes["disconnected_at"] = _now()
        self._connection = self._connection.evolve(**changes)

        if previous is not step.next_state:
            log.info(
                "gateway.state",
                previous=previous.value,
                state=step.next_state.value,
                input=event.value,
                error=error,
            )

        for effect in step.effects:
            self._run_effect(effect, error)
        return step

    def _run_effect(self, effect: Effect, error: Optional[str]) -> None:
        if effect is Effect.OPEN_TRANSPORT:
            pass  # connect() opens the socket after the transition
        elif effect is Effect.SEND_HANDSHAKE:
            self._send_handshake()
        elif effect is Effect.MARK_CONNECTED:
            self._reconnect_attempts = 0
            self._connection = self._connection.evolve(last_connected_at=_now())
        elif effect is Effect.CANCEL_PENDING:
            self._handshake_id = None
            self._correlator.cancel_all(error or "Connection closed")
        elif effect is Effect.CLOSE_TRANSPORT:
            self._closing = self._detach_transport()
        elif effect is Effect.SCHEDULE_RECONNECT:
            self._schedule_reconnect()
        elif effect is Effect.CANCEL_RECONNECT:
            self._cancel_reconnect()
        elif effect is Effect.NOTIFY_CONNECT:
            self._dispatcher.connects.notify()
        elif effect is Effect.NOTIFY_DISCONNECT:
            self._dispatcher.disconnects.notify(error)

    # ─────────────────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────────────────

    async def _reader_loop(self, ws: Any) -> None:
        """Read frames until the socket closes, then report the loss."""
        error: Optional[str] = None
        try:
            async for raw in ws:
                self._handle_raw(raw)
        except websockets.ConnectionClosed:
            pass
        except OSError as e:
            error = f"Transport error: {e}"
        except asyncio.CancelledError:
            return

        if ws is not self._ws:
            return
        code = getattr(ws, "close_code", None)
        if error is None:
            error = f"Disconnected (code: {code if code is not None else 1006})"
        log.warning("gateway.connection_lost", code=code, error=error)
        self._ws = None
        self._reader_task = None
        self._apply(SessionInput.TRANSPORT_CLOSED, error=error)

    def _detach_transport(self) -> Optional[asyncio.Task]:
        ws, reader = self._ws, self._reader_task
        self._ws = None
        self._reader_task = None
        if ws is None and reader is None:
            return None
        task = asyncio.ensure_future(self._shutdown_transport(ws, reader))
        task.add_done_callback(self._on_closed)
        return task

    def _on_closed(self, task: asyncio.Task) -> None:
        if self._closing is task:
            self._closing = None

    async def _shutdown_transport(self, ws: Any, reader: Optional[asyncio.Task]) -> None:
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if ws is not None:
            await self._close_quietly(ws)

    @staticmethod
    async def _close_quietly(ws: Any) -> None:
        try:
            await ws.close()
        except (OSError, websockets.WebSocketException) as e:
            log.debug("gateway.close_failed", error=str(e))

    async def _transmit(self, frame: RequestFrame) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(encode(frame))
        except (OSError, websockets.ConnectionClosed) as e:
            log.warning("gateway.send_failed", method=frame.method, request_id=frame.id, error=str(e))
            return False
        log.debug("gateway.sent", method=frame.method, request_id=frame.id)
        return True

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound frames
    # ─────────────────────────────────────────────────────────────────────────

    def _handle_raw(self, raw: str | bytes) -> None:
        frame = try_decode(raw)
        if frame is None:
            return
        try:
            self._handle_frame(frame)
        except Exception as e:
            log.error("gateway.frame_handler_failed", error=str(e), exc_info=True)

    def _handle_frame(self, frame: Frame) -> None:
        if isinstance(frame, ResponseFrame):
            self._handle_response(frame)
        elif isinstance(frame, EventFrame):
            if frame.event == EventName.CONNECT_CHALLENGE.value:
                nonce = frame.payload.get("nonce") if isinstance(frame.payload, dict) else None
                log.debug("gateway.challenge", nonce=nonce)
                self._apply(SessionInput.CHALLENGE_RECEIVED)
                return
            self._dispatcher.dispatch(frame)
        else:
            log.debug("gateway.unexpected_request", method=frame.method, request_id=frame.id)

    def _handle_response(self, frame: ResponseFrame) -> None:
        log.debug("gateway.response", request_id=frame.id, ok=frame.ok)
        is_handshake = frame.id == self._handshake_id
        self._correlator.resolve(frame.id, frame.ok, frame.payload, frame.error)
        if not is_handshake:
            return

        self._handshake_id = None
        if frame.is_hello_ok:
            log.info("gateway.connected", url=self._url, session_key=self._session_key)
            self._apply(SessionInput.HELLO_OK)
        else:
            if frame.error is not None:
                error = f"Handshake rejected: [{frame.error.code}] {frame.error.message}"
            else:
                error = f"Handshake rejected: unexpected payload type {frame.payload_type!r}"
            log.warning("gateway.handshake_rejected", error=error)
            self._apply(SessionInput.HELLO_REJECTED, error=error)

    # ─────────────────────────────────────────────────────────────────────────
    # Handshake
    # ─────────────────────────────────────────────────────────────────────────

    def _send_handshake(self) -> None:
        frame = make_request(Method.CONNECT, self._handshake_params)
        self._handshake_id = frame.id
        fut = self._correlator.register(frame.id, self._request_timeout)
        fut.add_done_callback(partial(self._on_handshake_settled, frame.id))
        log.info("gateway.handshake_sent", request_id=frame.id)
        self._spawn(self._transmit(frame))

    def _on_handshake_settled(self, request_id: str, fut: asyncio.Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is None or self._handshake_id != request_id:
            return
        self._handshake_id = None
        log.warning("gateway.handshake_failed", error=str(exc))
        self._apply(SessionInput.HELLO_REJECTED, error=f"Handshake failed: {exc}")

    # ─────────────────────────────────────────────────────────────────────────
    # Reconnection
    # ─────────────────────────────────────────────────────────────────────────

    def next_reconnect_delay(self) -> float:
        """Delay before the next automatic attempt. Never zero, never above the max."""
        if not self._reconnect_backoff:
            return self._reconnect_delay
        self._reconnect_attempts += 1
        ceiling = min(
            self._max_reconnect_delay,
            self._reconnect_delay * (2 ** (self._reconnect_attempts - 1)),
        )
        return random.uniform(self._reconnect_delay, ceiling)

    def _schedule_reconnect(self) -> None:
        if self.reconnect_scheduled:
            return
        delay = self.next_reconnect_delay()
        log.info("gateway.reconnect_scheduled", delay=round(delay, 3))
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            log.debug("gateway.reconnect_cancelled")

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        try:
            await self.connect()
        except TransportError as e:
            log.warning("gateway.reconnect_failed", error=str(e))

    # ─────────────────────────────────────────────────────────────────────────
    # Sending
    # ─────────────────────────────────────────────────────────────────────────

    def _may_send(self, frame: RequestFrame) -> bool:
        if self._state is SessionState.CONNECTED:
            return True
        # The handshake request is the only frame allowed before hello-ok.
        return (
            frame.method == Method.CONNECT.value
            and self._state in (SessionState.AWAITING_CHALLENGE, SessionState.AUTHENTICATING)
        )

    def send(self, frame: RequestFrame) -> bool:
        """
        Fire-and-forget send. Returns False (and logs) when the session is not
        connected; the frame is then dropped.
        """
        if not self._may_send(frame):
            log.error("gateway.send_rejected", method=frame.method, state=self._state.value)
            return False
        self._spawn(self._transmit(frame))
        return True

    async def send_with_response(
        self,
        frame: RequestFrame,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a request and wait for its response payload.

        Returns None when the session is not connected, the send fails, the
        deadline passes, or the session disconnects first. Raises RemoteError
        when the gateway answers with ok=false.
        """
        _, payload = await self._exchange(frame, timeout)
        return payload

    async def _exchange(self, frame: RequestFrame, timeout: Optional[float]) -> tuple[bool, Any]:
        if not self._may_send(frame):
            log.error("gateway.send_rejected", method=frame.method, state=self._state.value)
            return False, None

        fut = self._correlator.register(frame.id, timeout)
        try:
            if not await self._transmit(frame):
                return False, None
            return True, await fut
        except (TimeoutExceeded, ConnectionClosed) as e:
            log.info("gateway.request_unanswered", method=frame.method, request_id=frame.id, reason=str(e))
            return False, None
        finally:
            discarded = self._correlator.discard(frame.id)
            if discarded is not None and not discarded.done():
                discarded.cancel()

    # ─────────────────────────────────────────────────────────────────────────
    # Gateway methods
    # ─────────────────────────────────────────────────────────────────────────

    async def send_chat_message(
        self,
        message: str,
        idempotency_key: Optional[str] = None,
        session_key: Optional[str] = None,
    ) -> Any:
        """
        `chat.send`; returns the ack payload or None when unanswered.

        An acknowledgement without a payload is returned as an empty dict.
        """
        frame = make_request(
            Method.CHAT_SEND,
            chat_send_params(
                session_key or self._session_key,
                message,
                idempotency_key or str(uuid.uuid4()),
            ),
        )
        answered, payload = await self._exchange(frame, None)
        if not answered:
            return None
        return {} if payload is None else payload

    async def get_chat_history(
        self,
        limit: Optional[int] = None,
        before: Optional[str] = None,
        after: Optional[str] = None,
        session_key: Optional[str] = None,
    ) -> Optional[ChatHistoryResponse]:
        """`chat.history`; returns the parsed history (newest first, as sent) or None."""
        frame = make_request(
            Method.CHAT_HISTORY,
            chat_history_params(session_key or self._session_key, limit, before, after),
        )
        payload = await self.send_with_response(frame)
        if payload is None:
            return None
        try:
            return ChatHistoryResponse.from_payload(payload)
        except DecodeError as e:
            log.warning("gateway.history_malformed", error=str(e))
            return None
