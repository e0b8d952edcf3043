import pytest

from pledgebot.config import load_settings

ENV_KEYS = (
    "DISCORD_TOKEN",
    "TRADER_DB_PATH",
    "DISCORD_GUILD_IDS",
    "DISCORD_ALLOW_OFFLINE",
    "DISCORD_API_BASE_URL",
    "DISCORD_REQUEST_TIMEOUT",
    "PLEDGEBOT_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_token_is_required():
    with pytest.raises(RuntimeError):
        load_settings()


def test_defaults(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "abc")
    settings = load_settings()

    assert settings.discord_token == "abc"
    assert settings.database_path == "data/pledgebot.sqlite"
    assert settings.guild_ids == []
    assert settings.allow_offline is False
    assert settings.request_timeout == 10.0
    assert settings.log_level == "INFO"


def test_overrides(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "abc")
    monkeypatch.setenv("TRADER_DB_PATH", "/tmp/trades.sqlite")
    monkeypatch.setenv("DISCORD_GUILD_IDS", "123, 456,not-a-number")
    monkeypatch.setenv("DISCORD_ALLOW_OFFLINE", "True")
    monkeypatch.setenv("DISCORD_REQUEST_TIMEOUT", "2.5")
    monkeypatch.setenv("PLEDGEBOT_LOG_LEVEL", "debug")

    settings = load_settings()
    assert settings.database_path == "/tmp/trades.sqlite"
    assert settings.guild_ids == [123, 456]
    assert settings.allow_offline is True
    assert settings.request_timeout == 2.5
    assert settings.log_level == "DEBUG"


def test_invalid_timeout(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "abc")
    monkeypatch.setenv("DISCORD_REQUEST_TIMEOUT", "soon")
    with pytest.raises(RuntimeError):
        load_settings()
