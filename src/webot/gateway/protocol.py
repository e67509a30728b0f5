"""
gateway/protocol.py — Gateway WebSocket Frame Protocol

Typed frame schema for all client↔gateway communication.
Every frame is a JSON object with a `type` discriminator:

    Request:  {"type":"req","id":<str>,"method":<str>,"params"?:<any>}
    Response: {"type":"res","id":<str>,"ok":<bool>,"payload"?:<any>,
               "error"?:{"code":<int>,"message":<str>}}
    Event:    {"type":"event","event":<str>,"seq"?:<int>,"payload"?:<any>}

decode() never lets a JSON or type error escape: anything malformed comes
back as DecodeError so the receive loop can log and drop it.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from webot.exceptions import DecodeError
from webot.observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Frame types and well-known names
# ─────────────────────────────────────────────────────────────────────────────

class FrameType(str, Enum):
    REQUEST  = "req"
    RESPONSE = "res"
    EVENT    = "event"


class Method(str, Enum):
    """Gateway methods used by the client."""
    CONNECT      = "connect"
    CHAT_SEND    = "chat.send"
    CHAT_HISTORY = "chat.history"


class EventName(str, Enum):
    CONNECT_CHALLENGE = "connect.challenge"
    CHAT              = "chat"


HELLO_OK = "hello-ok"


class ChatState(str, Enum):
    STARTED   = "started"
    STREAMING = "streaming"
    FINAL     = "final"
    ERROR     = "error"


def new_request_id() -> str:
    return str(uuid.uuid4())


# ─────────────────────────────────────────────────────────────────────────────
# Frames
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ErrorShape:
    code: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


@dataclass
class RequestFrame:
    method: str
    params: Any = None
    id: str = field(default_factory=new_request_id)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": FrameType.REQUEST.value, "id": self.id, "method": self.method}
        if self.params is not None:
            d["params"] = self.params
        return d


@dataclass
class ResponseFrame:
    id: str
    ok: bool
    payload: Any = None
    error: Optional[ErrorShape] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": FrameType.RESPONSE.value, "id": self.id, "ok": self.ok}
        if self.payload is not None:
            d["payload"] = self.payload
        if self.error is not None:
            d["error"] = self.error.to_dict()
        return d

    @property
    def payload_type(self) -> Optional[str]:
        """The `type` discriminator inside the payload, if any."""
        if isinstance(self.payload, dict):
            value = self.payload.get("type")
            return value if isinstance(value, str) else None
        return None

    @property
    def is_hello_ok(self) -> bool:
        """True only for ok=true AND payload.type == "hello-ok"."""
        return self.ok and self.payload_type == HELLO_OK


@dataclass
class EventFrame:
    event: str
    payload: Any = None
    seq: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": FrameType.EVENT.value, "event": self.event}
        if self.seq is not None:
            d["seq"] = self.seq
        if self.payload is not None:
            d["payload"] = self.payload
        return d


Frame = Union[RequestFrame, ResponseFrame, EventFrame]


# ─────────────────────────────────────────────────────────────────────────────
# Codec
# ─────────────────────────────────────────────────────────────────────────────

def encode(frame: Frame) -> str:
    """Serialize a frame to the JSON text sent as one WebSocket message."""
    return json.dumps(frame.to_dict(), separators=(",", ":"))


def _require(d: dict, key: str, kind: type) -> Any:
    value = d.get(key)
    if not isinstance(value, kind):
        raise DecodeError(DecodeError.MALFORMED, f"Field '{key}' missing or not {kind.__name__}")
    return value


def _decode_error_shape(raw: Any) -> Optional[ErrorShape]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise DecodeError(DecodeError.MALFORMED, "Field 'error' is not an object")
    code = raw.get("code", 0)
    if not isinstance(code, int) or isinstance(code, bool):
        code = 0
    message = raw.get("message")
    return ErrorShape(code=code, message=str(message) if message is not None else "Request failed")


def decode(raw: str | bytes) -> Frame:
    """
    Parse one transport message into a Frame.

    Raises DecodeError (and nothing else) for invalid JSON, non-object
    values, unknown/missing `type`, or missing required fields.
    """
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        d = json.loads(raw)
    except (UnicodeDecodeError, ValueError, TypeError) as exc:
        raise DecodeError(DecodeError.MALFORMED, f"Invalid JSON: {exc}") from exc

    if not isinstance(d, dict):
        raise DecodeError(DecodeError.MALFORMED, "Frame is not a JSON object")

    ftype = d.get("type")
    if ftype == FrameType.REQUEST.value:
        return RequestFrame(
            id=_require(d, "id", str),
            method=_require(d, "method", str),
            params=d.get("params"),
        )
    if ftype == FrameType.RESPONSE.value:
        return ResponseFrame(
            id=_require(d, "id", str),
            ok=_require(d, "ok", bool),
            payload=d.get("payload"),
            error=_decode_error_shape(d.get("error")),
        )
    if ftype == FrameType.EVENT.value:
        seq = d.get("seq")
        if not isinstance(seq, int) or isinstance(seq, bool):
            seq = None
        return EventFrame(
            event=_require(d, "event", str),
            seq=seq,
            payload=d.get("payload"),
        )
    raise DecodeError(DecodeError.UNRECOGNIZED_FRAME, f"Unrecognized frame type: {ftype!r}")


def try_decode(raw: str | bytes) -> Optional[Frame]:
    """decode() for the receive path: logs and returns None instead of raising."""
    try:
        return decode(raw)
    except DecodeError as exc:
        log.warning("codec.decode_failed", reason=exc.reason, error=str(exc))
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Handshake
# ─────────────────────────────────────────────────────────────────────────────

def build_handshake_params(
    *,
    min_protocol: int = 3,
    max_protocol: int = 3,
    client_id: str = "webchat",
    display_name: str = "Webot",
    version: str = "1.0.0",
    platform: str = "python",
    mode: str = "webchat",
    token: Optional[str] = None,
    password: Optional[str] = None,
    role: Optional[str] = "operator",
    scopes: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Build the params object for the `connect` request."""
    params: dict[str, Any] = {
        "minProtocol": min_protocol,
        "maxProtocol": max_protocol,
        "client": {
            "id": client_id,
            "displayName": display_name,
            "version": version,
            "platform": platform,
            "mode": mode,
        },
    }
    auth = {k: v for k, v in (("token", token), ("password", password)) if v}
    if auth:
        params["auth"] = auth
    if role:
        params["role"] = role
    if scopes is not None:
        params["scopes"] = list(scopes)
    return params


def make_request(method: str | Method, params: Any = None) -> RequestFrame:
    """Build a RequestFrame with a fresh id."""
    name = method.value if isinstance(method, Method) else method
    return RequestFrame(method=name, params=params)


# ─────────────────────────────────────────────────────────────────────────────
# Chat payloads
# ─────────────────────────────────────────────────────────────────────────────

def join_content(content: Any) -> str:
    """Concatenate the text segments of a message content array."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for segment in content:
        if isinstance(segment, dict):
            text = segment.get("text")
            if isinstance(text, str):
                parts.append(text)
    return "".join(parts)


@dataclass
class ChatMessageBody:
    role: str
    content: list[dict[str, Any]] = field(default_factory=list)
    timestamp: Optional[float] = None
    stop_reason: Optional[str] = None

    @property
    def text(self) -> str:
        return join_content(self.content)

    @classmethod
    def from_payload(cls, d: Any) -> Optional["ChatMessageBody"]:
        if not isinstance(d, dict):
            return None
        content = d.get("content")
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        elif not isinstance(content, list):
            content = []
        # epoch milliseconds on the wire, seconds in Python
        timestamp = d.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            timestamp = None
        return cls(
            role=str(d.get("role") or "unknown"),
            content=content,
            timestamp=timestamp / 1000 if timestamp is not None else None,
            stop_reason=d.get("stopReason"),
        )


@dataclass
class ChatEventPayload:
    """Narrowed payload of an `event: "chat"` frame."""
    run_id: str
    session_key: str
    state: str
    seq: Optional[int] = None
    message: Optional[ChatMessageBody] = None
    error_message: Optional[str] = None

    @classmethod
    def from_payload(cls, d: Any) -> "ChatEventPayload":
        if not isinstance(d, dict):
            raise DecodeError(DecodeError.MALFORMED, "Chat event payload is not an object")
        state = d.get("state")
        if state not in {s.value for s in ChatState}:
            raise DecodeError(DecodeError.MALFORMED, f"Unknown chat state: {state!r}")
        seq = d.get("seq")
        return cls(
            run_id=str(d.get("runId") or ""),
            session_key=str(d.get("sessionKey") or ""),
            state=state,
            seq=seq if isinstance(seq, int) and not isinstance(seq, bool) else None,
            message=ChatMessageBody.from_payload(d.get("message")),
            error_message=d.get("errorMessage"),
        )


@dataclass
class ChatHistoryEntry:
    id: str
    type: str
    timestamp: Optional[str]
    message: Optional[ChatMessageBody]


@dataclass
class ChatHistoryResponse:
    session_key: str
    session_id: str
    messages: list[ChatHistoryEntry] = field(default_factory=list)

    @classmethod
    def from_payload(cls, d: Any) -> "ChatHistoryResponse":
        if not isinstance(d, dict):
            raise DecodeError(DecodeError.MALFORMED, "History payload is not an object")
        entries = []
        for raw in d.get("messages") or []:
            if not isinstance(raw, dict):
                continue
            entries.append(ChatHistoryEntry(
                id=str(raw.get("id") or ""),
                type=str(raw.get("type") or "message"),
                timestamp=raw.get("timestamp"),
                message=ChatMessageBody.from_payload(raw.get("message")),
            ))
        return cls(
            session_key=str(d.get("sessionKey") or ""),
            session_id=str(d.get("sessionId") or ""),
            messages=entries,
        )


def chat_send_params(session_key: str, message: str, idempotency_key: str) -> dict[str, Any]:
    return {"sessionKey": session_key, "message": message, "idempotencyKey": idempotency_key}


def chat_history_params(
    session_key: str,
    limit: Optional[int] = None,
    before: Optional[str] = None,
    after: Optional[str] = None,
) -> dict[str, Any]:
    params: dict[str, Any] = {"sessionKey": session_key}
    if limit is not None:
        params["limit"] = limit
    if before is not None:
        params["before"] = before
    if after is not None:
        params["after"] = after
    return params
