"""
tests/unit/test_remote_config.py — Remote Configuration Loader Tests
"""

import httpx
import pytest

from webot.config.remote import RemoteConfig, config_endpoint, fetch_remote_config
from webot.config.settings import Settings

FALLBACK = RemoteConfig(gateway_url="ws://local:18789", gateway_token="local-token")


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetchRemoteConfig:
    @pytest.mark.asyncio
    async def test_loads_remote_values(self):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, json={"gatewayUrl": "ws://remote:18789", "gatewayToken": "remote-token"})

        async with _client(handler) as client:
            cfg = await fetch_remote_config("http://host:3010/webot/", FALLBACK, client=client)
        assert requested == ["http://host:3010/webot/api/config"]
        assert cfg.gateway_url == "ws://remote:18789"
        assert cfg.gateway_token == "remote-token"

    @pytest.mark.asyncio
    async def test_empty_token_keeps_fallback_token(self):
        def handler(request):
            return httpx.Response(200, json={"gatewayUrl": "ws://remote:18789", "gatewayToken": ""})

        async with _client(handler) as client:
            cfg = await fetch_remote_config("http://host", FALLBACK, client=client)
        assert cfg.gateway_url == "ws://remote:18789"
        assert cfg.gateway_token == "local-token"

    @pytest.mark.asyncio
    async def test_http_error_falls_back(self):
        async with _client(lambda request: httpx.Response(500)) as client:
            assert await fetch_remote_config("http://host", FALLBACK, client=client) == FALLBACK

    @pytest.mark.asyncio
    async def test_bad_json_falls_back(self):
        async with _client(lambda request: httpx.Response(200, text="<html>")) as client:
            assert await fetch_remote_config("http://host", FALLBACK, client=client) == FALLBACK

    @pytest.mark.asyncio
    async def test_non_object_falls_back(self):
        async with _client(lambda request: httpx.Response(200, json=["ws://x"])) as client:
            assert await fetch_remote_config("http://host", FALLBACK, client=client) == FALLBACK

    @pytest.mark.asyncio
    async def test_network_error_falls_back(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            assert await fetch_remote_config("http://host", FALLBACK, client=client) == FALLBACK


class TestRemoteConfig:
    def test_camel_case_aliases(self):
        cfg = RemoteConfig.model_validate({"gatewayUrl": "ws://a", "gatewayToken": "t"})
        assert cfg.gateway_url == "ws://a"

    def test_from_settings(self, monkeypatch):
        monkeypatch.setenv("GATEWAY_TOKEN", "tok")
        cfg = RemoteConfig.from_settings(Settings())
        assert cfg.gateway_url == "ws://127.0.0.1:18789"
        assert cfg.gateway_token == "tok"

    def test_endpoint(self):
        assert config_endpoint("http://h/webot/") == "http://h/webot/api/config"

    def test_merge_prefers_non_empty_remote_values(self):
        local = RemoteConfig(gateway_url="ws://local", gateway_token="local-token")
        merged = local.merged_with({"gatewayUrl": "ws://remote", "gatewayToken": ""})
        assert merged.gateway_url == "ws://remote"
        assert merged.gateway_token == "local-token"

    def test_merge_accepts_field_names(self):
        local = RemoteConfig(gateway_url="ws://local")
        merged = local.merged_with({"gateway_url": "ws://remote", "gateway_token": "t"})
        assert merged.gateway_url == "ws://remote"
        assert merged.gateway_token == "t"

    def test_merge_empty_document_keeps_local(self):
        local = RemoteConfig(gateway_url="ws://local", gateway_token="x")
        assert local.merged_with({}) == local
