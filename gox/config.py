"""
Environment configuration loading for gox services.

Settings classes are pydantic-settings models; field names map to environment
variables case-insensitively, and defaults apply when a variable is unset.

    class Config(BaseConfig):
        env: str = "local"
        log_level: str = "debug"
        http_port: str = "9091"

    cfg = load_from_env(Config)
"""

import os
from typing import Type, TypeVar

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from gox.errors import ConfigurationError

SettingsT = TypeVar("SettingsT", bound=BaseSettings)


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )


class ServiceConfig(BaseConfig):
    """Settings most services start from."""

    env: str = "local"
    log_level: str = "debug"
    http_port: str = "9091"


def load_from_env(settings_cls: Type[SettingsT], **overrides) -> SettingsT:
    """Load and validate environment variables into `settings_cls`.

    Raises ConfigurationError when a required variable is missing or a value
    fails validation.
    """
    try:
        return settings_cls(**overrides)
    except ValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise ConfigurationError(
            f"invalid {settings_cls.__name__} configuration: {', '.join(fields)}",
            {"fields": fields}
        ) from e


def must_get_env(key: str, default: str) -> str:
    """Return the environment variable `key`, or `default` when it is unset."""
    return os.environ.get(key, default)
