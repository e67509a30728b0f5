"""
gateway/proxy.py — Auth-Injecting Gateway Proxy

A small WebSocket server that sits between untrusted clients (the browser
UI) and the real gateway. Each client connection gets its own upstream
socket. Upstream frames are relayed verbatim; client frames are relayed
after inject_auth(), which stamps the server-held gateway token onto the
`connect` request so the token never has to be shipped to the client.

Usage:
    proxy = GatewayProxy("ws://127.0.0.1:18789", gateway_token="…", port=3011)
    await proxy.start()
    await proxy.wait_closed()
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.asyncio.client import connect as ws_connect
from websockets.asyncio.server import ServerConnection, serve

from webot.gateway.protocol import FrameType, Method
from webot.observability.logger import get_logger

log = get_logger(__name__)


def inject_auth(raw: str | bytes, token: str) -> Optional[str]:
    """
    Return the client message to forward upstream, or None to drop it.

    `connect` requests get `params.auth = {"token": token}`; every other
    JSON object passes through unchanged. Non-JSON input is dropped.
    """
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        parsed = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        log.warning("proxy.client_message_invalid", error=str(e))
        return None

    if not isinstance(parsed, dict):
        log.warning("proxy.client_message_invalid", error="not a JSON object")
        return None

    if parsed.get("type") == FrameType.REQUEST.value and parsed.get("method") == Method.CONNECT.value:
        params = parsed.get("params")
        params = dict(params) if isinstance(params, dict) else {}
        if token:
            params["auth"] = {"token": token}
        parsed["params"] = params
        log.debug("proxy.auth_injected", request_id=parsed.get("id"))
        return json.dumps(parsed)

    return raw


class GatewayProxy:
    """WebSocket relay that injects gateway credentials on the handshake."""

    def __init__(
        self,
        upstream_url: str,
        *,
        gateway_token: str = "",
        host: str = "127.0.0.1",
        port: int = 3011,
        upstream_connect: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self._upstream_url = upstream_url
        self._token = gateway_token
        self._host = host
        self._port = port
        self._upstream_connect = upstream_connect or (lambda url: ws_connect(url, max_size=2**20))
        self._server = None
        self._connections = 0

    @property
    def port(self) -> int:
        """Bound port (resolves port=0 after start())."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._port

    @property
    def active_connections(self) -> int:
        return self._connections

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._server = await serve(self._handler, self._host, self._port, max_size=2**20)
        log.info("proxy.started", host=self._host, port=self.port, upstream=self._upstream_url)

    async def wait_closed(self) -> None:
        if self._server:
            await self._server.wait_closed()

    async def shutdown(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        log.info("proxy.stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # Connection handler
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, client: ServerConnection) -> None:
        remote = getattr(client, "remote_address", ("?", 0))
        log.info("proxy.client_connected", remote=str(remote))

        try:
            upstream = await self._upstream_connect(self._upstream_url)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            log.error("proxy.upstream_unavailable", url=self._upstream_url, error=str(e))
            await client.close(code=1011, reason="Gateway unavailable")
            return

        self._connections += 1
        to_client = asyncio.create_task(self._pump_upstream(upstream, client))
        to_gateway = asyncio.create_task(self._pump_client(client, upstream))
        try:
            done, pending = await asyncio.wait(
                {to_client, to_gateway}, return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            self._connections -= 1
            await upstream.close()
            await client.close()
            log.info("proxy.client_disconnected", remote=str(remote))

    async def _pump_upstream(self, upstream: Any, client: ServerConnection) -> None:
        try:
            async for message in upstream:
                await client.send(message)
        except websockets.ConnectionClosed:
            pass
        log.debug("proxy.upstream_closed", code=getattr(upstream, "close_code", None))

    async def _pump_client(self, client: ServerConnection, upstream: Any) -> None:
        try:
            async for message in client:
                forwarded = inject_auth(message, self._token)
                if forwarded is None:
                    continue
                await upstream.send(forwarded)
        except websockets.ConnectionClosed:
            pass
        log.debug("proxy.client_closed", code=getattr(client, "close_code", None))
