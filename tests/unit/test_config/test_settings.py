"""Tests for Settings validation and the config loader."""

import pytest

from opsconsole.config.loader import load_config
from opsconsole.config.settings import Settings
from opsconsole.exceptions import ConfigurationError
from opsconsole.utils.constants import FALLBACK_CALLBACK_SECRET

BOT_TOKEN = "123456:test-token"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Keep host environment and .env files out of settings."""
    for name in (
        "TELEGRAM_BOT_TOKEN",
        "CALLBACK_SECRET",
        "API_HMAC_SECRET",
        "CALLBACK_MAX_BYTES",
        "CALLBACK_TTL_SECONDS",
        "LOG_LEVEL",
        "ENVIRONMENT",
        "DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_settings_defaults():
    settings = Settings(telegram_bot_token=BOT_TOKEN)

    assert settings.callback_ttl_seconds == 900
    assert settings.callback_max_bytes == 64
    assert settings.callback_alias_capacity == 5000
    assert settings.action_dedupe_ttl_seconds == 8.0
    assert settings.telegram_token_str == BOT_TOKEN
    assert settings.is_production is True


def test_callback_secrets_priority_order():
    """Dedicated secret signs; bot token and API secret still verify."""
    settings = Settings(
        telegram_bot_token=BOT_TOKEN,
        callback_secret="dedicated",
        api_hmac_secret="api-secret",
    )

    assert settings.callback_secrets == ["dedicated", BOT_TOKEN, "api-secret"]


def test_callback_secrets_falls_back_to_bot_token():
    settings = Settings(telegram_bot_token=BOT_TOKEN)

    assert settings.callback_secrets == [BOT_TOKEN]
    assert FALLBACK_CALLBACK_SECRET not in settings.callback_secrets


@pytest.mark.parametrize("value", [10, 40, 65])
def test_callback_max_bytes_out_of_range_rejected(value):
    with pytest.raises(ValueError):
        Settings(telegram_bot_token=BOT_TOKEN, callback_max_bytes=value)


def test_callback_max_bytes_accepts_smallest_alias_budget():
    settings = Settings(telegram_bot_token=BOT_TOKEN, callback_max_bytes=41)

    assert settings.callback_max_bytes == 41


def test_log_level_is_normalized():
    settings = Settings(telegram_bot_token=BOT_TOKEN, log_level="warning")

    assert settings.log_level == "WARNING"


def test_load_config_applies_preset():
    settings = load_config(env="testing", telegram_bot_token=BOT_TOKEN)

    assert settings.callback_secret is not None
    assert settings.callback_secret.get_secret_value() == "test-callback-secret"
    assert settings.callback_alias_capacity == 100
    assert settings.is_production is False


def test_load_config_environment_variable_beats_preset(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", BOT_TOKEN)
    monkeypatch.setenv("CALLBACK_TTL_SECONDS", "120")

    settings = load_config(env="development")

    assert settings.callback_ttl_seconds == 120


def test_load_config_unknown_environment():
    with pytest.raises(ConfigurationError):
        load_config(env="staging", telegram_bot_token=BOT_TOKEN)


def test_load_config_wraps_validation_errors():
    with pytest.raises(ConfigurationError):
        load_config(env="production")


def test_load_config_reads_env_file(tmp_path):
    env_file = tmp_path / "bot.env"
    env_file.write_text(f"TELEGRAM_BOT_TOKEN={BOT_TOKEN}\nCALLBACK_MAX_BYTES=48\n")

    settings = load_config(env="production", config_file=env_file)

    assert settings.telegram_token_str == BOT_TOKEN
    assert settings.callback_max_bytes == 48


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(
            env="production",
            config_file=tmp_path / "missing.env",
            telegram_bot_token=BOT_TOKEN,
        )
