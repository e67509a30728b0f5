"""
main.py — Webot Entry Point

Usage:
    webot chat                                  # terminal chat, default settings
    webot chat --url ws://remote:18789 --token …
    webot chat --config-url http://127.0.0.1:3010/webot
    webot serve --port 3010 --proxy-port 3011   # web UI + auth-injecting proxy
    webot chat --log-level DEBUG --config path/to/config.yaml
"""

from __future__ import annotations
# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables before settings are built
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import find_dotenv, load_dotenv

load_dotenv(find_dotenv(usecwd=True))

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import sys
from typing import Optional


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="webot",
        description="Webot — thin chat client for the WebSocket gateway",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $WEBOT_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Verbose logging to the console (overrides config and $DEBUG)",
    )

    sub = parser.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Interactive terminal chat (default)")
    chat.add_argument("--url", default=None, help="Gateway WebSocket URL")
    chat.add_argument("--token", default=None, help="Gateway auth token")
    chat.add_argument("--session-key", default=None, help="Chat session key (default: random webchat-xxxxxxxx)")
    chat.add_argument(
        "--config-url",
        default=None,
        help="Fetch gatewayUrl/gatewayToken from a running `webot serve` (e.g. http://127.0.0.1:3010/webot)",
    )

    serve = sub.add_parser("serve", help="Serve the web UI, /api/config and optionally the gateway proxy")
    serve.add_argument("--host", default=None, help="Bind address (default: http.host)")
    serve.add_argument("--port", type=int, default=None, help="HTTP port (default: http.port)")
    serve.add_argument("--base-path", default=None, help="URL prefix (default: http.base_path)")
    serve.add_argument("--static-dir", default=None, help="Web UI directory (default: http.static_dir)")
    serve.add_argument("--proxy-port", type=int, default=None, help="Also run the auth-injecting WebSocket proxy on this port")

    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args([*(argv if argv is not None else sys.argv[1:]), "chat"])
    return args


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from webot.config.settings import load_settings
    from webot.exceptions import ConfigError
    from webot.observability.logger import get_logger, setup_logging

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    settings = apply_overrides(settings, args)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    debug = settings.debug_enabled(args.debug)
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output or debug,
        debug=debug,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("webot.main")
    return settings, log


def apply_overrides(settings, args: argparse.Namespace):
    """Fold CLI flags into a copy of the loaded settings."""
    top: dict = {}
    if getattr(args, "url", None):
        top["gateway_url"] = args.url
    if getattr(args, "token", None):
        top["gateway_token"] = args.token
    if getattr(args, "session_key", None):
        top["chat"] = settings.chat.model_copy(update={"session_key": args.session_key})

    http: dict = {}
    for flag, field_name in (
        ("host", "host"),
        ("port", "port"),
        ("base_path", "base_path"),
        ("static_dir", "static_dir"),
        ("proxy_port", "proxy_port"),
    ):
        value = getattr(args, flag, None)
        if value is not None:
            http[field_name] = value
    if http:
        # Re-validate so base_path normalisation and port checks apply
        top["http"] = type(settings.http).model_validate({**settings.http.model_dump(), **http})

    return settings.model_copy(update=top) if top else settings


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)

    from webot import __version__

    log.info(
        "webot.starting",
        version=__version__,
        command=args.command,
        gateway_url=settings.effective_gateway_url,
    )

    if args.command == "serve":
        return await _run_serve(settings, log)
    return await _run_chat(settings, log, config_url=args.config_url)


async def _run_chat(settings, log, config_url: Optional[str] = None) -> int:
    """Terminal chat. Delegates to interfaces/chat_cli.py."""
    from webot.gateway.session import GatewaySession
    from webot.interfaces.chat_cli import run_chat_cli

    if config_url:
        from webot.config.remote import RemoteConfig, fetch_remote_config

        remote = await fetch_remote_config(config_url, RemoteConfig.from_settings(settings))
        settings = settings.model_copy(update={
            "gateway_url": remote.gateway_url,
            "gateway_token": remote.gateway_token or None,
        })

    session = GatewaySession.from_settings(settings)
    log.info("webot.interface_starting", interface="chat", session_key=session.session_key)
    try:
        await run_chat_cli(
            session,
            history_limit=settings.chat.history_limit,
            response_timeout=settings.chat.response_timeout_seconds,
        )
    except KeyboardInterrupt:
        log.info("webot.interrupted")
    return 0


async def _run_serve(settings, log) -> int:
    """HTTP integration handler, plus the gateway proxy when a proxy port is set."""
    from webot.gateway.proxy import GatewayProxy
    from webot.webui.handler import WebotHttpHandler
    from webot.webui.server import start_http_server, stop_http_server

    http = settings.http
    proxy: Optional[GatewayProxy] = None
    gateway_url = settings.effective_gateway_url
    expose_token = http.expose_token

    if http.proxy_port:
        proxy = GatewayProxy(
            settings.effective_gateway_url,
            gateway_token=settings.effective_gateway_token,
            host=http.host,
            port=http.proxy_port,
        )
        await proxy.start()
        # Browsers talk to the proxy, which holds the token
        gateway_url = f"ws://{http.host}:{proxy.port}"
        expose_token = False

    handler = WebotHttpHandler(
        base_path=http.base_path,
        static_dir=http.static_dir,
        gateway_url=gateway_url,
        gateway_token=settings.effective_gateway_token,
        expose_token=expose_token,
    )
    httpd = start_http_server(http.host, http.port, [handler])
    print(f"Webot serving on http://{http.host}:{httpd.server_address[1]}{http.base_path}", file=sys.stderr)

    try:
        if proxy is not None:
            await proxy.wait_closed()
        else:
            await asyncio.Event().wait()
    except asyncio.CancelledError:
        log.info("webot.interrupted")
    finally:
        stop_http_server(httpd)
        if proxy is not None:
            await proxy.shutdown()
    return 0


def cli() -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
