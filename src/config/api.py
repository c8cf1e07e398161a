"""API server configuration."""

from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class APIConfig(BaseSettings):
    """HTTP server settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001, ge=1, le=65535)
    api_debug: bool = Field(default=False)
    api_reload: bool = Field(default=False)
    api_key: Optional[str] = Field(default=None, min_length=16)
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_requests: int = Field(default=100, ge=1, le=100000)
    rate_limit_window_seconds: int = Field(default=60, ge=1, le=86400)
    enable_cors: bool = Field(default=False)
    cors_origins: List[str] = Field(default_factory=list)
    enable_docs: bool = Field(default=True)
