"""
chat/ — Chat Session Adapter

Maps gateway chat traffic onto a ChatView.
"""

from webot.chat.adapter import ChatSessionAdapter
from webot.chat.view import ChatMessage, ChatView, RecordingChatView

__all__ = ["ChatSessionAdapter", "ChatMessage", "ChatView", "RecordingChatView"]
