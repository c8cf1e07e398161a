"""Logging configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseSettings):
    """Log level and rendering settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    enable_access_logs: bool = Field(default=True)
