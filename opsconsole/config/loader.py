"""Load settings with environment presets applied."""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError

from ..exceptions import ConfigurationError
from .environments import ENVIRONMENTS
from .settings import Settings

logger = structlog.get_logger()


def load_config(
    env: Optional[str] = None,
    config_file: Optional[Path] = None,
    **overrides: Any,
) -> Settings:
    """Build Settings from env vars, an optional .env file and a preset.

    Values set explicitly in the environment win over the preset; keyword
    overrides win over both.
    """
    env_name = (env or os.getenv("ENVIRONMENT") or "development").strip().lower()
    preset = ENVIRONMENTS.get(env_name)
    if preset is None:
        raise ConfigurationError(
            f"Unknown environment {env_name!r}, expected one of {sorted(ENVIRONMENTS)}"
        )

    values: Dict[str, Any] = {
        key: value
        for key, value in preset.as_dict().items()
        if key.upper() not in os.environ
    }
    values.update(overrides)

    if config_file is not None and not config_file.exists():
        raise ConfigurationError(f"Config file does not exist: {config_file}")

    try:
        if config_file is not None:
            settings = Settings(_env_file=config_file, **values)  # type: ignore[call-arg]
        else:
            settings = Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    logger.debug("Configuration loaded", environment=env_name)
    return settings
