"""
interfaces/chat_cli.py — Terminal Chat over the Gateway

A thin REPL standing in for the browser chat page. Rendering goes through
RichChatView (a ChatView); everything else is the ChatSessionAdapter
driving a GatewaySession, exactly as the web UI would.

Usage:
    webot chat
    webot chat --url ws://remote:18789 --token …
    webot chat --config-url http://127.0.0.1:3010/webot
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from webot.chat.adapter import DEFAULT_RESPONSE_TIMEOUT, ChatSessionAdapter
from webot.chat.view import ChatMessage
from webot.exceptions import TransportError
from webot.gateway.session import GatewaySession
from webot.observability.logger import bind_session, get_logger

log = get_logger(__name__)


_HELP_TEXT = """
## Webot Commands

| Command | Description |
|---------|-------------|
| `<message>` | Send a chat message |
| `/history [n]` | Reload the last *n* messages |
| `/status` | Show connection status |
| `/session` | Show the session key |
| `/reconnect` | Drop and re-open the gateway connection |
| `/clear` | Clear the screen |
| `/help` | Show this help |
| `exit` / `Ctrl+D` | Quit |
"""

_STATUS_STYLE = {
    "connected": "green",
    "connecting": "yellow",
    "disconnected": "red",
}


class RichChatView:
    """ChatView rendered to a Rich console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.status = "disconnected"
        self._status_line: Optional[Text] = None

    def add_message(self, message: ChatMessage, scroll: bool = True) -> None:
        stamp = datetime.fromtimestamp(message.timestamp).strftime("%H:%M")
        if message.role == "user":
            self.console.print(Text(f"You · {stamp}", style="bold cyan"))
            self.console.print(message.content)
        else:
            self.console.print(Text(f"Assistant · {stamp}", style="bold magenta"))
            self.console.print(Markdown(message.content))
        self.console.print()

    def show_loading(self) -> None:
        self.console.print("[dim]🤔 Thinking…[/]")

    def hide_loading(self) -> None:
        pass

    def clear(self) -> None:
        self.console.clear()

    def set_status(self, status: str, error: Optional[str] = None) -> None:
        self.status = status
        style = _STATUS_STYLE.get(status, "white")
        line = f"[{style}]● {status.capitalize()}[/]"
        if error:
            line += f" [dim]({error})[/]"
        self.console.print(line)


class ChatCLI:
    """REPL over one GatewaySession."""

    def __init__(
        self,
        session: GatewaySession,
        *,
        history_limit: int = 50,
        response_timeout: Optional[float] = DEFAULT_RESPONSE_TIMEOUT,
        console: Optional[Console] = None,
    ):
        self._session = session
        self.view = RichChatView(console)
        self.console = self.view.console
        self._adapter = ChatSessionAdapter(
            session, self.view, history_limit=history_limit, response_timeout=response_timeout,
        )
        self._history_limit = history_limit

    async def start(self) -> None:
        """Connect and run the REPL until the user quits."""
        bind_session(self._session.session_key)
        self.console.print(Panel(
            Text("💬 Webot — Gateway Chat", style="bold cyan"),
            title="Webot",
            subtitle=f"connecting to {self._session.url}",
            box=box.DOUBLE,
            border_style="bright_cyan",
        ))
        self.view.set_status("connecting")

        try:
            await self._session.connect()
        except TransportError as e:
            self.console.print(
                f"[red]❌ Cannot reach gateway at {self._session.url}: {e}[/]\n"
                f"[dim]   Retrying in the background; type /status to check.[/]"
            )

        try:
            await self._repl_loop()
        finally:
            self._adapter.close()
            await self._session.disconnect()

    # ─────────────────────────────────────────────────────────────────────────
    # REPL
    # ─────────────────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        from aioconsole import ainput

        while True:
            try:
                raw = await ainput(self._build_prompt())
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye![/]")
                break

            raw = raw.strip()
            if not raw:
                continue
            if raw.lower() in ("exit", "quit"):
                self.console.print("[dim]Goodbye![/]")
                break

            await self.dispatch(raw)

    def _build_prompt(self) -> str:
        marker = "●" if self._session.is_connected else "○"
        return f"Webot[{marker}][{self._session.session_key}]> "

    async def dispatch(self, raw: str) -> None:
        """Route one line of input."""
        if not raw.startswith("/"):
            await self._cmd_send(raw)
            return

        parts = raw.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        if cmd == "/help":
            self.console.print(Markdown(_HELP_TEXT))
        elif cmd == "/history":
            await self._cmd_history(arg)
        elif cmd == "/status":
            self._cmd_status()
        elif cmd == "/session":
            self.console.print(f"[dim]Session: {self._session.session_key}[/]")
        elif cmd == "/reconnect":
            await self._cmd_reconnect()
        elif cmd == "/clear":
            self.view.clear()
        else:
            self.console.print(f"[dim]Unknown command: {cmd}. Type /help.[/]")

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def _cmd_send(self, text: str) -> None:
        if not self._session.is_connected:
            self.console.print("[yellow]Not connected — message not sent.[/]")
            return
        await self._adapter.send_message(text)

    async def _cmd_history(self, arg: str) -> None:
        limit = self._history_limit
        if arg:
            try:
                limit = max(1, int(arg))
            except ValueError:
                self.console.print("[dim]Usage: /history \\[n][/]")
                return
        if not self._session.is_connected:
            self.console.print("[yellow]Not connected.[/]")
            return
        self.view.clear()
        count = await self._adapter.load_history(limit)
        self.console.print(f"[dim]{count} message(s) loaded.[/]")

    def _cmd_status(self) -> None:
        state = self._session.connection_state
        lines = [
            "📡 [bold]Connection[/]",
            f"  URL: {self._session.url}",
            f"  Status: {state.status.value}",
            f"  Pending requests: {self._session.correlator.pending_count}",
        ]
        if state.last_connected_at:
            lines.append(f"  Last connected: {state.last_connected_at.isoformat(timespec='seconds')}")
        if state.last_error:
            lines.append(f"  Last error: {state.last_error}")
        if self._session.reconnect_scheduled:
            lines.append("  [yellow]Reconnect scheduled[/]")
        self.console.print("\n".join(lines))

    async def _cmd_reconnect(self) -> None:
        self.view.set_status("connecting")
        try:
            await self._session.reconnect()
        except TransportError as e:
            self.console.print(f"[red]❌ Reconnect failed: {e}[/]")


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────

async def run_chat_cli(
    session: GatewaySession,
    history_limit: int = 50,
    response_timeout: Optional[float] = DEFAULT_RESPONSE_TIMEOUT,
) -> None:
    """Entry point for the terminal chat."""
    cli = ChatCLI(session, history_limit=history_limit, response_timeout=response_timeout)
    await cli.start()
