"""
config/settings.py — Webot Runtime Settings

Client settings: structure and defaults come from config.yaml, gateway
credentials from the environment or .env. Every field is validated by
pydantic before the session is built.

  - GatewayConfig rejects non-positive timeouts and min_protocol > max_protocol
  - HttpConfig rejects out-of-range ports and base paths without a leading '/'
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a numbered list of every problem found
  - load_settings() respects WEBOT_CONFIG env var as a fallback when no
    explicit config_path argument is given
  - resolve_debug() folds explicit / persisted / environment debug switches
    into a single boolean at construction time
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from webot.exceptions import ConfigError


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_GATEWAY_URL = "ws://127.0.0.1:18789"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _parse_flag(value: Any) -> Optional[bool]:
    """Interpret a loosely-typed flag. None / '' means 'not set'."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    return text in _TRUTHY


def resolve_debug(
    explicit: Optional[bool] = None,
    persisted: Optional[bool] = None,
    environment: Any = None,
) -> bool:
    """
    Resolve the debug switch once, at construction time.

    Precedence: explicit (CLI flag) > persisted (config file) >
    environment (DEBUG=true) > default (False).
    """
    for candidate in (explicit, persisted, _parse_flag(environment)):
        if candidate is not None:
            return bool(candidate)
    return False


def _check_port(name: str, v: Optional[int]) -> Optional[int]:
    if v is not None and not (0 <= v <= 65535):
        raise ValueError(f"{name} must be between 0 and 65535, got {v}")
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class ClientConfig(BaseModel):
    """Client identity descriptor sent in the handshake."""
    id: str = "webchat"
    display_name: str = "Webot"
    version: str = "1.0.0"
    platform: str = "python"
    mode: str = "webchat"


class GatewayConfig(BaseModel):
    url: str = DEFAULT_GATEWAY_URL
    token: Optional[str] = None
    password: Optional[str] = None
    request_timeout_seconds: float = 10.0
    reconnect_delay_seconds: float = 3.0
    reconnect_backoff: bool = False
    max_reconnect_delay_seconds: float = 30.0
    min_protocol: int = 3
    max_protocol: int = 3
    role: Optional[str] = "operator"
    scopes: List[str] = Field(default_factory=lambda: ["operator.admin"])

    @field_validator("request_timeout_seconds", "reconnect_delay_seconds", "max_reconnect_delay_seconds")
    @classmethod
    def _positive_seconds(cls, v: float, info) -> float:
        if v <= 0:
            raise ValueError(f"gateway.{info.field_name} must be > 0")
        return v

    @model_validator(mode="after")
    def _protocol_bounds(self) -> "GatewayConfig":
        if self.min_protocol > self.max_protocol:
            raise ValueError(
                f"gateway.min_protocol ({self.min_protocol}) must not exceed "
                f"gateway.max_protocol ({self.max_protocol})"
            )
        if self.max_reconnect_delay_seconds < self.reconnect_delay_seconds:
            raise ValueError(
                "gateway.max_reconnect_delay_seconds must be >= "
                "gateway.reconnect_delay_seconds"
            )
        return self


class ChatConfig(BaseModel):
    session_key: Optional[str] = None
    history_limit: int = 50
    response_timeout_seconds: float = 120.0

    @field_validator("history_limit")
    @classmethod
    def _positive_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("chat.history_limit must be >= 1")
        return v

    @field_validator("response_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("chat.response_timeout_seconds must be > 0")
        return v


class HttpConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3010
    base_path: str = "/webot"
    static_dir: str = "./webui"
    expose_token: bool = True
    proxy_port: Optional[int] = None

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        return _check_port("http.port", v)

    @field_validator("proxy_port")
    @classmethod
    def _valid_proxy_port(cls, v: Optional[int]) -> Optional[int]:
        return _check_port("http.proxy_port", v)

    @field_validator("base_path")
    @classmethod
    def _valid_base_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"http.base_path must start with '/', got '{v}'")
        return v.rstrip("/") or "/"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True
    debug: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Webot runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets / overrides from .env ----------------------------------------
    gateway_url: Optional[str] = Field(default=None, alias="GATEWAY_URL")
    gateway_token: Optional[str] = Field(default=None, alias="GATEWAY_TOKEN")
    gateway_password: Optional[str] = Field(default=None, alias="GATEWAY_PASSWORD")
    debug_env: Optional[str] = Field(default=None, alias="DEBUG")

    # -- Structured config (from config.yaml) --------------------------------
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("gateway", mode="before")
    @classmethod
    def _coerce_gateway(cls, v: Any) -> Any:
        return GatewayConfig(**v) if isinstance(v, dict) else v

    @field_validator("client", mode="before")
    @classmethod
    def _coerce_client(cls, v: Any) -> Any:
        return ClientConfig(**v) if isinstance(v, dict) else v

    @field_validator("chat", mode="before")
    @classmethod
    def _coerce_chat(cls, v: Any) -> Any:
        return ChatConfig(**v) if isinstance(v, dict) else v

    @field_validator("http", mode="before")
    @classmethod
    def _coerce_http(cls, v: Any) -> Any:
        return HttpConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def effective_gateway_url(self) -> str:
        return self.gateway_url or self.gateway.url

    @property
    def effective_gateway_token(self) -> str:
        return self.gateway_token or self.gateway.token or ""

    @property
    def effective_gateway_password(self) -> Optional[str]:
        return self.gateway_password or self.gateway.password

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def debug_enabled(self, explicit: Optional[bool] = None) -> bool:
        """Debug switch with the CLI flag folded in; see resolve_debug()."""
        return resolve_debug(explicit, self.logging.debug, self.debug_env)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        catches cross-field problems after env overrides have been applied.
        """
        errors: list[str] = []

        # ── Gateway URL scheme ───────────────────────────────────────────────
        url = self.effective_gateway_url
        scheme = urlparse(url).scheme
        if scheme not in ("ws", "wss"):
            errors.append(
                f"Gateway URL '{url}' must use ws:// or wss:// (got '{scheme or 'none'}')."
            )

        # ── Proxy and HTTP server cannot share a port ───────────────────────
        if self.http.proxy_port and self.http.proxy_port == self.http.port:
            errors.append(
                f"http.proxy_port ({self.http.proxy_port}) must differ from "
                f"http.port ({self.http.port})."
            )

        # ── Client identity must be non-empty ────────────────────────────────
        if not self.client.id.strip():
            errors.append("client.id must not be empty.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nWebot startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"gateway", "client", "chat", "http", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Pick the YAML file to read, first match wins:
      1. config_path (the --config flag)
      2. WEBOT_CONFIG environment variable
      3. config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("WEBOT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(
                **{
                    k: v
                    for k, v in _load_yaml(_resolve_config_path(None)).items()
                    if k in _KNOWN_SECTIONS
                }
            )
    return _singleton
