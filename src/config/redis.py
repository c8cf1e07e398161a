"""Redis configuration."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisConfig(BaseSettings):
    """Redis connection settings for the shared state store."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_password: Optional[str] = Field(default=None)
    redis_db: int = Field(default=0, ge=0, le=15)
    redis_url: Optional[str] = Field(default=None)
    redis_max_connections: int = Field(default=20, ge=1)
    redis_socket_timeout: int = Field(default=5, ge=1)
    redis_socket_connect_timeout: int = Field(default=5, ge=1)
    redis_key_prefix: str = Field(default="ide")

    def get_url(self) -> str:
        """Get Redis connection URL."""
        if self.redis_url:
            return self.redis_url

        password_part = f":{self.redis_password}@" if self.redis_password else ""
        return (
            f"redis://{password_part}{self.redis_host}:{self.redis_port}/{self.redis_db}"
        )
