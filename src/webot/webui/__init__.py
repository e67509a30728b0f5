"""
webui/ — HTTP integration handler and standalone server for the web chat UI.
"""

from webot.webui.handler import HandlerChain, WebotHttpHandler
from webot.webui.server import start_http_server, stop_http_server

__all__ = ["HandlerChain", "WebotHttpHandler", "start_http_server", "stop_http_server"]
