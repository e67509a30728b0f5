"""
gateway/ — WebSocket Gateway Session Client

Frame codec, request correlator, event dispatcher and the session state
machine for the request/response/event gateway protocol, plus the
auth-injecting proxy used by the web UI server.
"""

from webot.gateway.protocol import (
    EventFrame,
    RequestFrame,
    ResponseFrame,
    decode,
    encode,
    make_request,
)
from webot.gateway.correlator import RequestCorrelator
from webot.gateway.dispatcher import EventDispatcher
from webot.gateway.state import ConnectionState, SessionState
from webot.gateway.session import GatewaySession
from webot.gateway.proxy import GatewayProxy

__all__ = [
    "EventFrame",
    "RequestFrame",
    "ResponseFrame",
    "decode",
    "encode",
    "make_request",
    "RequestCorrelator",
    "EventDispatcher",
    "ConnectionState",
    "SessionState",
    "GatewaySession",
    "GatewayProxy",
]
