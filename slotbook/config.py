"""
Configuration management using Pydantic models loaded from YAML.
"""

import logging
from pathlib import Path

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator


class DefaultsConfig(BaseModel):
    """Default settings for slot searches."""
    slot_length_minutes: int = 30
    window_days: int = 7

    @field_validator("slot_length_minutes", "window_days")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure defaults are positive."""
        if value <= 0:
            raise ValueError(f"Value must be greater than zero, got {value}")
        return value


class AppConfig(BaseModel):
    """
    Application configuration.

    Built once at startup and handed to the components that need it.
    """
    database_url: str = "sqlite:///slotbook.db"
    timezone: str = "UTC"  # Used for naive input and for display only
    log_level: str = "WARNING"
    echo_sql: bool = False
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Ensure the timezone is a known IANA name."""
        try:
            pendulum.timezone(value)
        except Exception as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensure the log level is one the logging module knows."""
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, value: str) -> str:
        if "://" not in value:
            raise ValueError(f"database_url must be a SQLAlchemy URL, got {value!r}")
        return value

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Read a YAML config file and validate it.

        Missing keys fall back to their defaults, so an empty file is valid.

        Raises:
            FileNotFoundError: If ``config_path`` does not exist
            ValueError: If the YAML is malformed or a value fails validation
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Copy config.example.yaml to config.yaml and adjust database_url."
            )

        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError(f"{config_path} must contain a mapping of settings")

        return cls.model_validate(raw)

    @classmethod
    def load_or_default(cls, config_path: Path | None) -> "AppConfig":
        """Load the given file, the default file if present, or built-in defaults."""
        if config_path is not None:
            return cls.load_from_yaml(config_path)

        default_path = get_default_config_path()
        if default_path.exists():
            return cls.load_from_yaml(default_path)
        return cls()


def get_default_config_path() -> Path:
    """``./config.yaml`` if present, else ``config.yaml`` next to the package."""
    candidate = Path.cwd() / "config.yaml"
    if candidate.exists():
        return candidate
    return Path(__file__).resolve().parent.parent / "config.yaml"
