"""
Test conftest — isolate gateway environment variables so Settings tests
are not affected by real tokens in the developer's or CI environment.
"""
import pytest

_GATEWAY_ENV_VARS = [
    "GATEWAY_URL",
    "GATEWAY_TOKEN",
    "GATEWAY_PASSWORD",
    "DEBUG",
    "WEBOT_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_gateway_env(monkeypatch):
    """Remove gateway env vars for every test so Settings() behaves as if
    none are present unless the test explicitly provides them.
    Also disables .env file loading so local developer .env files don't
    leak real credentials into tests."""
    for var in _GATEWAY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import webot.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
