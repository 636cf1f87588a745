"""Configuration loading and settings for HAFAS Line Monitor."""

from pathlib import Path
from typing import Self
from zoneinfo import ZoneInfo

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hafas_line_monitor.models import MonitorFileConfig


def load_monitor_file(path: Path) -> MonitorFileConfig:
    """Load and parse a monitor.yaml tunables file.

    A missing or empty file yields the built-in defaults.

    Args:
        path: Path to the monitor.yaml file.

    Returns:
        Parsed MonitorFileConfig.

    Raises:
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If the configuration is invalid.
    """
    if not path.exists():
        return MonitorFileConfig()

    with path.open() as f:
        raw_config = yaml.safe_load(f)

    return MonitorFileConfig.model_validate(raw_config or {})


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=True,
    )

    # Monitored line
    bus_line: str = Field(
        validation_alias="BUS_LINE",
        description="Line identifier whose departures are collected",
    )

    # Provider credentials
    primary_api_key: str = Field(
        validation_alias="PRIMARY_API_KEY",
        description="Access id used first against the hourly quota",
    )
    secondary_api_key: str | None = Field(
        default=None,
        validation_alias="SECONDARY_API_KEY",
        description="Backup access id rotated in when the primary hits the cap",
    )
    hafas_base_url: str = Field(
        default="https://cdt.hafas.de/opendata/apiserver",
        validation_alias="HAFAS_BASE_URL",
        description="Base URL of the HAFAS ReST API",
    )

    # Persistence
    database_url: str = Field(
        validation_alias="DATABASE_URL",
        description="SQLAlchemy async connection URL",
    )
    database_echo: bool = Field(
        default=False,
        validation_alias="DATABASE_ECHO",
        description="Echo SQL statements to the log",
    )

    # Tunables file
    config_path: Path = Field(
        default=Path("./monitor.yaml"),
        validation_alias="CONFIG_PATH",
        description="Path to the optional monitor.yaml tunables file",
    )

    # Raw response archive
    backup_dir: Path | None = Field(
        default=None,
        validation_alias="BACKUP_DIR",
        description="Directory for raw response backups (disabled when unset)",
    )

    # Local clock for peak hours and quota windows
    timezone: str = Field(
        default="Europe/Luxembourg",
        validation_alias="TIMEZONE",
        description="IANA timezone of the monitored network",
    )

    # Server settings
    health_port: int = Field(
        default=8080,
        ge=0,
        le=65535,
        validation_alias="HEALTH_PORT",
        description="Port for the health, metrics and statistics server",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: str = Field(
        default="json",
        validation_alias="LOG_FORMAT",
        description="Log output format (json or text)",
    )

    @model_validator(mode="after")
    def validate_timezone(self) -> Self:
        """Validate that the timezone name is known."""
        try:
            ZoneInfo(self.timezone)
        except (KeyError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{self.timezone}'") from e
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def backup_api_key(self) -> str:
        """Secondary key, or the primary when only one key is configured."""
        return self.secondary_api_key or self.primary_api_key
