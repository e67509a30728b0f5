"""
webui/handler.py — HTTP Integration Handler

A predicate-guarded request handler for hosting the web chat UI inside a
larger http.server application. Given a base path (default `/webot`) it:

  - serves `<base>/api/config` as JSON `{gatewayUrl, gatewayToken}`
  - serves static assets from `static_dir`
  - falls back to `index.html` for anything else under the base path
  - returns False for every path outside the base path, so the next
    handler in a HandlerChain gets a chance

Usage:
    handler = WebotHttpHandler(base_path="/webot", static_dir="./webui",
                               gateway_url="ws://127.0.0.1:18789")
    server = start_http_server("127.0.0.1", 3010, [handler])
"""

from __future__ import annotations

import json
import mimetypes
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from pathlib import Path
from typing import Callable, Iterable, Optional
from urllib.parse import unquote, urlsplit

from webot.observability.logger import get_logger

log = get_logger(__name__)

MIME_TYPES = {
    ".html": "text/html",
    ".js": "application/javascript",
    ".css": "text/css",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".svg": "image/svg+xml",
}

INDEX_FILE = "index.html"
CONFIG_ROUTE = "/api/config"

RequestHandler = Callable[[BaseHTTPRequestHandler], bool]


def content_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in MIME_TYPES:
        return MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def _send(request: BaseHTTPRequestHandler, status: int, body: bytes, content_type: str) -> None:
    request.send_response(status)
    request.send_header("Content-Type", content_type)
    request.send_header("Content-Length", str(len(body)))
    request.send_header("Cache-Control", "no-cache")
    request.end_headers()
    if request.command != "HEAD":
        request.wfile.write(body)


def send_not_found(request: BaseHTTPRequestHandler) -> None:
    _send(request, HTTPStatus.NOT_FOUND, b"Not Found", "text/plain")


class WebotHttpHandler:
    """Serves the web UI, its runtime config and SPA fallback under one base path."""

    def __init__(
        self,
        *,
        base_path: str = "/webot",
        static_dir: str | Path = "./webui",
        gateway_url: str = "ws://localhost:18789/",
        gateway_token: str = "",
        expose_token: bool = True,
    ):
        self.base_path = "/" + base_path.strip("/") if base_path.strip("/") else ""
        self.static_dir = Path(static_dir)
        self.gateway_url = gateway_url
        self.gateway_token = gateway_token
        self.expose_token = expose_token

    def relative_path(self, raw_path: str) -> Optional[str]:
        """
        Path below the base path ("/" for the base itself), or None when the
        request is outside it.
        """
        path = unquote(urlsplit(raw_path).path) or "/"
        if not self.base_path:
            return path
        if path == self.base_path:
            return "/"
        if path.startswith(self.base_path + "/"):
            return path[len(self.base_path):]
        return None

    def __call__(self, request: BaseHTTPRequestHandler) -> bool:
        relative = self.relative_path(request.path)
        if relative is None:
            return False

        log.debug("webui.request", method=request.command, path=request.path)

        if relative == CONFIG_ROUTE:
            self._serve_config(request)
            return True

        if relative == "/" or relative.endswith(".html"):
            target = self.static_dir / INDEX_FILE
        else:
            target = self._resolve_asset(relative)

        if target is not None and self._serve_file(request, target):
            return True

        # SPA fallback
        if self._serve_file(request, self.static_dir / INDEX_FILE):
            return True

        log.info("webui.not_found", path=request.path)
        send_not_found(request)
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Routes
    # ─────────────────────────────────────────────────────────────────────────

    def config_document(self) -> dict[str, str]:
        return {
            "gatewayUrl": self.gateway_url,
            "gatewayToken": self.gateway_token if self.expose_token else "",
        }

    def _serve_config(self, request: BaseHTTPRequestHandler) -> None:
        body = json.dumps(self.config_document()).encode("utf-8")
        _send(request, HTTPStatus.OK, body, "application/json")

    def _resolve_asset(self, relative: str) -> Optional[Path]:
        root = self.static_dir.resolve()
        try:
            candidate = (root / relative.lstrip("/")).resolve()
        except (ValueError, OSError):
            return None
        # Refuse directory traversal
        if candidate != root and root not in candidate.parents:
            log.warning("webui.traversal_refused", path=relative)
            return None
        return candidate

    def _serve_file(self, request: BaseHTTPRequestHandler, path: Path) -> bool:
        if not path.is_file():
            return False
        try:
            content = path.read_bytes()
        except OSError as e:
            log.error("webui.read_failed", path=str(path), error=str(e))
            return False
        _send(request, HTTPStatus.OK, content, content_type_for(path))
        return True


class HandlerChain:
    """Runs handlers in order; the first one that returns True wins."""

    def __init__(self, handlers: Iterable[RequestHandler] = ()):
        self._handlers: list[RequestHandler] = list(handlers)

    def add(self, handler: RequestHandler) -> None:
        self._handlers.append(handler)

    def __len__(self) -> int:
        return len(self._handlers)

    def handle(self, request: BaseHTTPRequestHandler) -> bool:
        for handler in self._handlers:
            if handler(request):
                return True
        return False

    def __call__(self, request: BaseHTTPRequestHandler) -> None:
        if not self.handle(request):
            log.debug("webui.unhandled", path=request.path)
            send_not_found(request)
