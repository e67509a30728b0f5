"""
gateway/dispatcher.py — Event Dispatcher

Fans inbound EventFrames out to subscribers. Delivery is synchronous,
best-effort and at-most-once per subscriber registered at dispatch time;
nothing is queued or replayed. A subscriber that raises is logged and
skipped so the remaining subscribers still see the event.

Frames whose `event` is "chat" are additionally narrowed to a
ChatEventPayload and delivered to the chat subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Generic, TypeVar

from webot.exceptions import DecodeError
from webot.gateway.protocol import ChatEventPayload, EventFrame, EventName
from webot.observability.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class ObserverList(Generic[T]):
    """
    Append-only subscriber registry for one event category.

    Subscribers may be plain callables or coroutine functions; coroutine
    results are scheduled on the running loop and their failures logged.
    """

    def __init__(self, name: str):
        self._name = name
        self._observers: list[Callable[..., Any]] = []
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._observers)

    def add(self, observer: Callable[..., Any]) -> Callable[[], None]:
        """Register an observer. Returns a cleanup function."""
        self._observers.append(observer)

        def remove() -> None:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass
        return remove

    def notify(self, *args: Any) -> int:
        """Call every observer in registration order. Returns the delivery count."""
        delivered = 0
        for observer in list(self._observers):
            try:
                result = observer(*args)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception as e:
                log.error(
                    "dispatcher.subscriber_failed",
                    channel=self._name,
                    subscriber=getattr(observer, "__qualname__", repr(observer)),
                    error=str(e),
                    exc_info=True,
                )
                continue
            delivered += 1
        return delivered

    def _schedule(self, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("dispatcher.subscriber_failed", channel=self._name, error=str(exc))


class EventDispatcher:
    """Routes EventFrames to generic and chat-specific subscribers."""

    def __init__(self) -> None:
        self.events: ObserverList[EventFrame] = ObserverList("event")
        self.chat_events: ObserverList[ChatEventPayload] = ObserverList("chat")
        # Session lifecycle observers; the session decides when these fire.
        self.connects: ObserverList[None] = ObserverList("connect")
        self.disconnects: ObserverList[str] = ObserverList("disconnect")

    def subscribe(self, callback: Callable[[EventFrame], Any]) -> Callable[[], None]:
        return self.events.add(callback)

    def subscribe_chat(self, callback: Callable[[ChatEventPayload], Any]) -> Callable[[], None]:
        return self.chat_events.add(callback)

    def dispatch(self, event: EventFrame) -> None:
        log.debug("dispatcher.event", event=event.event, seq=event.seq)
        self.events.notify(event)

        if event.event != EventName.CHAT.value:
            return
        try:
            payload = ChatEventPayload.from_payload(event.payload)
        except DecodeError as e:
            log.warning("dispatcher.chat_payload_invalid", error=str(e), seq=event.seq)
            return
        log.debug(
            "dispatcher.chat_event",
            session_key=payload.session_key,
            run_id=payload.run_id,
            state=payload.state,
        )
        self.chat_events.notify(payload)
