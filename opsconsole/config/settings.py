"""Configuration management using Pydantic Settings.

Features:
- Environment variable loading
- Type validation
- Default values
- Computed properties
"""

from typing import Any, List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from opsconsole.utils.constants import (
    DEFAULT_ACTION_DEDUPE_TTL_SECONDS,
    DEFAULT_CALLBACK_ALIAS_CAPACITY,
    DEFAULT_CALLBACK_ALIAS_TTL_SECONDS,
    DEFAULT_CALLBACK_TTL_SECONDS,
    DEFAULT_CONVERSATION_TIMEOUT_SECONDS,
    DEFAULT_FLOW_TTL_SECONDS,
    DEFAULT_MENU_METRICS_LOG_INTERVAL,
    FALLBACK_CALLBACK_SECRET,
    TELEGRAM_CALLBACK_DATA_MAX_BYTES,
)

# Smallest alias payload: "cbk|" + 8-char key + 8-char token + 10-digit
# timestamp + 8-char signature. Below it long actions could not be encoded.
MIN_SIGNED_CALLBACK_BYTES = 41


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Bot settings
    telegram_bot_token: SecretStr = Field(
        ..., description="Telegram bot token from BotFather"
    )
    telegram_bot_username: Optional[str] = Field(
        None, description="Bot username without @"
    )

    # Callback signing
    callback_secret: Optional[SecretStr] = Field(
        None, description="Dedicated HMAC secret for inline button payloads"
    )
    api_hmac_secret: Optional[SecretStr] = Field(
        None, description="Backend API HMAC secret (secondary callback secret)"
    )
    callback_ttl_seconds: int = Field(
        DEFAULT_CALLBACK_TTL_SECONDS,
        description="Lifetime of session-bound inline buttons",
        ge=1,
        le=24 * 60 * 60,
    )
    callback_max_bytes: int = Field(
        TELEGRAM_CALLBACK_DATA_MAX_BYTES,
        description="Upper bound for encoded callback_data",
    )
    callback_alias_capacity: int = Field(
        DEFAULT_CALLBACK_ALIAS_CAPACITY,
        description="Max entries kept in the callback alias table",
        ge=1,
        le=1_000_000,
    )
    callback_alias_ttl_seconds: int = Field(
        DEFAULT_CALLBACK_ALIAS_TTL_SECONDS,
        description="Lifetime of callback alias entries",
        ge=1,
        le=24 * 60 * 60,
    )

    # Session state
    action_dedupe_ttl_seconds: float = Field(
        DEFAULT_ACTION_DEDUPE_TTL_SECONDS,
        description="Window for collapsing repeated button presses",
        ge=0,
        le=3600,
    )
    flow_ttl_seconds: int = Field(
        DEFAULT_FLOW_TTL_SECONDS,
        description="Inactivity timeout for multi-step flows",
        ge=1,
    )
    conversation_timeout_seconds: int = Field(
        DEFAULT_CONVERSATION_TIMEOUT_SECONDS,
        description="How long a conversation waits for the next reply (0 disables)",
        ge=0,
    )

    # Monitoring
    menu_metrics_log_interval: int = Field(
        DEFAULT_MENU_METRICS_LOG_INTERVAL,
        description="Emit menu action health every N observations",
        ge=1,
    )
    log_level: str = Field("INFO", description="Logging level")

    # Development
    debug: bool = Field(False, description="Enable debug mode")
    development_mode: bool = Field(False, description="Enable development features")

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    @field_validator("callback_max_bytes")
    @classmethod
    def validate_callback_max_bytes(cls, v: Any) -> int:
        """Keep the payload budget within Telegram's limit."""
        value = int(v)
        if not MIN_SIGNED_CALLBACK_BYTES <= value <= TELEGRAM_CALLBACK_DATA_MAX_BYTES:
            raise ValueError(
                "callback_max_bytes must be between "
                f"{MIN_SIGNED_CALLBACK_BYTES} and {TELEGRAM_CALLBACK_DATA_MAX_BYTES}"
            )
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: Any) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()  # type: ignore[no-any-return]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not (self.debug or self.development_mode)

    @property
    def telegram_token_str(self) -> str:
        """Get Telegram token as string."""
        return self.telegram_bot_token.get_secret_value()

    @property
    def callback_secrets(self) -> List[str]:
        """Configured signing secrets in priority order, never empty.

        The first entry signs; all entries verify. The built-in fallback is
        only used when nothing is configured.
        """
        secrets: List[str] = []
        for candidate in (
            self.callback_secret,
            self.telegram_bot_token,
            self.api_hmac_secret,
        ):
            if candidate is None:
                continue
            value = candidate.get_secret_value().strip()
            if value and value not in secrets:
                secrets.append(value)
        return secrets or [FALLBACK_CALLBACK_SECRET]
