"""
config/remote.py — Remote Configuration Loader

Fetches `{gatewayUrl, gatewayToken}` from a running HTTP integration
handler (`<base>/api/config`). Any failure (network error, non-2xx status,
invalid JSON) is logged and the local fallback is returned unchanged, so a
client can always start.

Usage:
    fallback = RemoteConfig.from_settings(settings)
    cfg = await fetch_remote_config("http://127.0.0.1:3010/webot", fallback)
"""

from __future__ import annotations

from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from webot.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class RemoteConfig(BaseModel):
    """The `/api/config` document. Accepts both camelCase and field names."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    gateway_url: str = Field(default="ws://127.0.0.1:18789", alias="gatewayUrl")
    gateway_token: str = Field(default="", alias="gatewayToken")

    @classmethod
    def from_settings(cls, settings) -> "RemoteConfig":
        return cls(
            gateway_url=settings.effective_gateway_url,
            gateway_token=settings.effective_gateway_token,
        )

    def merged_with(self, document: dict) -> "RemoteConfig":
        """Non-empty values from `document` override this config."""
        remote = RemoteConfig.model_validate(document)
        given = remote.model_fields_set
        return RemoteConfig(
            gateway_url=remote.gateway_url if "gateway_url" in given and remote.gateway_url else self.gateway_url,
            gateway_token=remote.gateway_token if "gateway_token" in given and remote.gateway_token else self.gateway_token,
        )


def config_endpoint(base_url: str) -> str:
    return base_url.rstrip("/") + "/api/config"


async def fetch_remote_config(
    base_url: str,
    fallback: Optional[RemoteConfig] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    client: Optional[httpx.AsyncClient] = None,
) -> RemoteConfig:
    """GET `<base_url>/api/config`; returns `fallback` on any failure."""
    fallback = fallback or RemoteConfig()
    url = config_endpoint(base_url)
    log.info("config.remote_loading", url=url)

    try:
        if client is not None:
            response = await client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
                response = await owned.get(url)
        response.raise_for_status()
        document = response.json()
        if not isinstance(document, dict):
            raise ValueError("config document is not a JSON object")
        config = fallback.merged_with(document)
    except httpx.HTTPStatusError as e:
        log.warning("config.remote_failed", url=url, status=e.response.status_code)
        return fallback
    except (httpx.HTTPError, ValueError, ValidationError) as e:
        log.warning("config.remote_failed", url=url, error=str(e))
        return fallback

    log.info("config.remote_loaded", gateway_url=config.gateway_url, has_token=bool(config.gateway_token))
    return config
