"""
webot — thin client for the request/response/event WebSocket gateway.

The gateway session (handshake, request correlation, event dispatch and
reconnection) lives in webot.gateway; webot.chat turns chat traffic into
ordered UI operations; webot.webui serves the static assets and the
/api/config document.
"""

__version__ = "1.0.0"
