"""Environment-specific configuration presets."""

from typing import Any, Dict


class BaseEnvironmentConfig:
    """Base preset; subclasses override class attributes."""

    @classmethod
    def as_dict(cls) -> Dict[str, Any]:
        """Return public, non-callable attributes as overrides."""
        return {
            key: getattr(cls, key)
            for key in dir(cls)
            if not key.startswith("_") and not callable(getattr(cls, key))
        }


class DevelopmentConfig(BaseEnvironmentConfig):
    """Local development: verbose logs, short-lived buttons."""

    debug = True
    development_mode = True
    log_level = "DEBUG"
    callback_ttl_seconds = 5 * 60
    flow_ttl_seconds = 5 * 60


class TestingConfig(BaseEnvironmentConfig):
    """Test runs: deterministic secret, small tables."""

    debug = True
    development_mode = True
    log_level = "DEBUG"
    callback_secret = "test-callback-secret"
    callback_alias_capacity = 100
    conversation_timeout_seconds = 30


class ProductionConfig(BaseEnvironmentConfig):
    """Production defaults."""

    debug = False
    development_mode = False
    log_level = "INFO"
    callback_ttl_seconds = 15 * 60
    conversation_timeout_seconds = 30 * 60


ENVIRONMENTS = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
