"""
Shared fixtures for gateway tests: an in-memory transport that speaks the
websockets ClientConnection surface used by GatewaySession.
"""

import asyncio
import json
from typing import Any, Callable, Optional

import pytest

_CLOSE = object()


class FakeTransport:
    """One fake socket. Tests feed server frames in and inspect what was sent."""

    def __init__(self, url: str):
        self.url = url
        self.sent: list[dict] = []
        self.close_code: Optional[int] = None
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    # -- server side ----------------------------------------------------------

    def feed(self, frame: dict | str) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def challenge(self, nonce: str = "nonce-1") -> None:
        self.feed({"type": "event", "event": "connect.challenge", "payload": {"nonce": nonce, "ts": 0}})

    def respond(self, request_id: str, payload: Any = None, ok: bool = True, error: Optional[dict] = None) -> None:
        frame: dict = {"type": "res", "id": request_id, "ok": ok}
        if payload is not None:
            frame["payload"] = payload
        if error is not None:
            frame["error"] = error
        self.feed(frame)

    def drop(self, code: int = 1006) -> None:
        """Server-side close without a handshake."""
        self.close_code = code
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def sent_requests(self, method: str) -> list[dict]:
        return [f for f in self.sent if f.get("type") == "req" and f.get("method") == method]


class FakeGateway:
    """Transport factory handing out FakeTransports; can be told to refuse."""

    def __init__(self):
        self.transports: list[FakeTransport] = []
        self.refuse = 0

    async def __call__(self, url: str) -> FakeTransport:
        if self.refuse:
            self.refuse -= 1
            raise OSError("connection refused")
        transport = FakeTransport(url)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]

    @staticmethod
    async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    async def next_request(self, method: str, count: int = 1) -> dict:
        """Wait until `count` requests of `method` were sent; return the last one."""
        await self.wait_until(lambda: len(self.current.sent_requests(method)) >= count)
        return self.current.sent_requests(method)[count - 1]

    async def handshake(self, session, payload: Optional[dict] = None) -> FakeTransport:
        """connect() + challenge + hello-ok; returns the live transport."""
        await session.connect()
        transport = self.current
        transport.challenge()
        request = await self.next_request("connect")
        transport.respond(request["id"], payload or {"type": "hello-ok", "protocol": 3})
        await self.wait_until(lambda: session.is_connected)
        return transport


@pytest.fixture
def gateway():
    return FakeGateway()
