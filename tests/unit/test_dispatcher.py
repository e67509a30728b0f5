"""
tests/unit/test_dispatcher.py — Event Dispatcher Tests
"""

import asyncio

import pytest

from webot.gateway.dispatcher import EventDispatcher, ObserverList
from webot.gateway.protocol import EventFrame


def _chat_event(state="final", **extra):
    payload = {"runId": "run-1", "sessionKey": "webchat-abc", "seq": 1, "state": state}
    payload.update(extra)
    return EventFrame(event="chat", payload=payload, seq=1)


class TestObserverList:
    def test_notify_in_registration_order(self):
        calls = []
        observers = ObserverList("test")
        observers.add(lambda x: calls.append(("a", x)))
        observers.add(lambda x: calls.append(("b", x)))
        assert observers.notify(1) == 2
        assert calls == [("a", 1), ("b", 1)]

    def test_remove(self):
        calls = []
        observers = ObserverList("test")
        remove = observers.add(calls.append)
        remove()
        remove()
        observers.notify("x")
        assert calls == []
        assert len(observers) == 0

    def test_failing_observer_does_not_stop_others(self):
        calls = []
        observers = ObserverList("test")

        def boom(_):
            raise RuntimeError("boom")

        observers.add(boom)
        observers.add(calls.append)
        assert observers.notify("x") == 1
        assert calls == ["x"]

    @pytest.mark.asyncio
    async def test_coroutine_observer_scheduled(self):
        done = asyncio.Event()

        async def observer(value):
            assert value == "v"
            done.set()

        observers = ObserverList("test")
        observers.add(observer)
        observers.notify("v")
        await asyncio.wait_for(done.wait(), 1)

    @pytest.mark.asyncio
    async def test_failing_coroutine_observer_logged_not_raised(self):
        async def observer():
            raise RuntimeError("async boom")

        observers = ObserverList("test")
        observers.add(observer)
        observers.notify()
        await asyncio.sleep(0.01)


class TestEventDispatcher:
    def test_generic_subscriber_sees_every_event(self):
        seen = []
        dispatcher = EventDispatcher()
        dispatcher.subscribe(seen.append)
        dispatcher.dispatch(EventFrame(event="tick"))
        dispatcher.dispatch(_chat_event())
        assert [e.event for e in seen] == ["tick", "chat"]

    def test_chat_subscriber_gets_typed_payload(self):
        seen = []
        dispatcher = EventDispatcher()
        dispatcher.subscribe_chat(seen.append)
        dispatcher.dispatch(_chat_event(message={"role": "assistant", "content": [{"type": "text", "text": "Hi"}]}))
        assert len(seen) == 1
        assert seen[0].run_id == "run-1"
        assert seen[0].message.text == "Hi"

    def test_non_chat_event_not_routed_to_chat(self):
        seen = []
        dispatcher = EventDispatcher()
        dispatcher.subscribe_chat(seen.append)
        dispatcher.dispatch(EventFrame(event="presence", payload={}))
        assert seen == []

    def test_invalid_chat_payload_dropped(self):
        generic, chat = [], []
        dispatcher = EventDispatcher()
        dispatcher.subscribe(generic.append)
        dispatcher.subscribe_chat(chat.append)
        dispatcher.dispatch(EventFrame(event="chat", payload={"state": "weird"}))
        assert len(generic) == 1
        assert chat == []

    def test_subscriber_registered_later_misses_earlier_events(self):
        seen = []
        dispatcher = EventDispatcher()
        dispatcher.dispatch(EventFrame(event="early"))
        dispatcher.subscribe(seen.append)
        dispatcher.dispatch(EventFrame(event="late"))
        assert [e.event for e in seen] == ["late"]
