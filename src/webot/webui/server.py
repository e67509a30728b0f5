"""
webui/server.py — Standalone HTTP Server

Hosts a HandlerChain on a ThreadingHTTPServer in a daemon thread. Used by
`webot serve`; a host application with its own http.server can mount
WebotHttpHandler in its chain instead.

http.server is synchronous, so it runs beside the asyncio loop rather
than on it.
"""

from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable

from webot.observability.logger import get_logger
from webot.webui.handler import HandlerChain, RequestHandler

log = get_logger(__name__)


def make_request_handler(chain: HandlerChain) -> type[BaseHTTPRequestHandler]:
    """Build a BaseHTTPRequestHandler subclass that delegates to `chain`."""

    class ChainRequestHandler(BaseHTTPRequestHandler):
        server_version = "Webot"

        def do_GET(self):
            chain(self)

        def do_HEAD(self):
            chain(self)

        def log_message(self, format, *args):
            # Routed through structlog instead of stderr
            log.debug("http.access", client=self.client_address[0], line=format % args)

    return ChainRequestHandler


def start_http_server(
    host: str = "127.0.0.1",
    port: int = 3010,
    handlers: Iterable[RequestHandler] = (),
) -> ThreadingHTTPServer:
    """
    Start serving in a background thread.

    Returns the server; call `shutdown()` then `server_close()` to stop it.
    `server.server_address[1]` holds the bound port when `port=0`.
    """
    chain = handlers if isinstance(handlers, HandlerChain) else HandlerChain(handlers)
    httpd = ThreadingHTTPServer((host, port), make_request_handler(chain))
    httpd.daemon_threads = True
    thread = threading.Thread(target=httpd.serve_forever, name="webot-http", daemon=True)
    thread.start()

    log.info("http.started", host=host, port=httpd.server_address[1], handlers=len(chain))
    return httpd


def stop_http_server(httpd: ThreadingHTTPServer) -> None:
    httpd.shutdown()
    httpd.server_close()
    log.info("http.stopped")
