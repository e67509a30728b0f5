"""
chat/view.py — Chat rendering surface

ChatView is what the ChatSessionAdapter drives: append a message, show or
hide the "Thinking…" indicator, reflect connection status. The terminal
interface implements it with Rich; RecordingChatView keeps everything in
memory for headless runs and tests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Protocol


@dataclass(frozen=True)
class ChatMessage:
    """One rendered chat bubble. Append-only once handed to a view."""
    role: str
    content: str
    timestamp: float = field(default_factory=time.time)

    @property
    def label(self) -> str:
        return "You" if self.role == "user" else "Assistant"


class ChatView(Protocol):
    def add_message(self, message: ChatMessage, scroll: bool = True) -> None: ...

    def show_loading(self) -> None: ...

    def hide_loading(self) -> None: ...

    def clear(self) -> None: ...

    def set_status(self, status: str, error: Optional[str] = None) -> None: ...


class RecordingChatView:
    """In-memory ChatView."""

    def __init__(self) -> None:
        self.messages: list[ChatMessage] = []
        self.loading = False
        self.loading_shown = 0
        self.loading_hidden = 0
        self.status = "disconnected"
        self.status_error: Optional[str] = None

    def add_message(self, message: ChatMessage, scroll: bool = True) -> None:
        self.messages.append(message)

    def show_loading(self) -> None:
        self.loading = True
        self.loading_shown += 1

    def hide_loading(self) -> None:
        self.loading = False
        self.loading_hidden += 1

    def clear(self) -> None:
        self.messages.clear()

    def set_status(self, status: str, error: Optional[str] = None) -> None:
        self.status = status
        self.status_error = error

    @property
    def transcript(self) -> list[tuple[str, str]]:
        return [(m.role, m.content) for m in self.messages]
