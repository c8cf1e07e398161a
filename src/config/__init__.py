"""Configuration management for the IDE orchestration API.

This module provides a unified Settings class with flat, environment-driven
fields plus grouped accessors for each concern.

Usage:
    from src.config import settings

    # Access grouped settings
    settings.api.api_host
    settings.ide.runtime_create_timeout
    settings.redis.get_url()

    # Or use flat access
    settings.api_host
    settings.runtime_create_timeout
    settings.get_redis_url()
"""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Import grouped configurations
from .api import APIConfig
from .redis import RedisConfig
from .logging import LoggingConfig
from .ide import IDEConfig, EndpointsConfig


class Settings(BaseSettings):
    """Application settings with environment variable support.

    This class provides both:
    1. Grouped access via nested configs (settings.ide.ide_id_length)
    2. Flat access (settings.ide_id_length)
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001, ge=1, le=65535)
    api_debug: bool = Field(default=False)
    api_reload: bool = Field(default=False)

    # Service-to-service token; end-user auth is enforced upstream
    api_key: Optional[str] = Field(
        default=None,
        min_length=16,
        description="Shared API key required on all non-health routes when set",
    )

    # Rate limiting (fixed window per API key, client IP when auth is off)
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_requests: int = Field(default=100, ge=1, le=100000)
    rate_limit_window_seconds: int = Field(default=60, ge=1, le=86400)

    # State store
    state_backend: str = Field(
        default="memory",
        description="Container state store backend: 'memory' or 'redis'",
    )

    # Redis Configuration
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_password: Optional[str] = Field(default=None)
    redis_db: int = Field(default=0, ge=0, le=15)
    redis_url: Optional[str] = Field(default=None)
    redis_max_connections: int = Field(default=20, ge=1)
    redis_socket_timeout: int = Field(default=5, ge=1)
    redis_socket_connect_timeout: int = Field(default=5, ge=1)
    redis_key_prefix: str = Field(default="ide")

    # Runtime backend
    runtime_backend: str = Field(
        default="docker",
        description="Container runtime backend: 'docker' or 'memory'",
    )
    docker_base_url: Optional[str] = Field(
        default=None,
        description="Docker daemon URL; defaults to DOCKER_HOST / local socket",
    )
    ide_container_image: str = Field(default="ide-container:latest")
    ide_network: str = Field(default="ide-network")
    container_cpu_limit: float = Field(default=2.0, gt=0, le=64)
    container_memory_limit: int = Field(default=4294967296, ge=268435456)
    inactivity_timeout_seconds: int = Field(default=600, ge=60)
    management_api_url: str = Field(
        default="http://ide-management-api:3001",
        description="URL containers call back for inactivity shutdown",
    )

    # Identifier allocation
    ide_id_length: int = Field(default=8, ge=4, le=32)
    ide_id_max_attempts: int = Field(default=10, ge=1, le=1000)
    ide_readable_ids: bool = Field(
        default=False, description="Use adjective-noun-NN container IDs"
    )

    # Bounded runtime calls (seconds)
    runtime_create_timeout: float = Field(default=60.0, gt=0, le=600)
    runtime_inspect_timeout: float = Field(default=10.0, gt=0, le=120)
    runtime_destroy_timeout: float = Field(default=30.0, gt=0, le=300)
    execution_timeout: float = Field(default=30.0, gt=0, le=300)

    # Reconciliation
    status_poll_interval_seconds: int = Field(
        default=15,
        ge=1,
        le=3600,
        description="Interval between background status sweeps",
    )
    terminal_retention_minutes: int = Field(
        default=30,
        ge=1,
        le=10080,
        description="Release unacknowledged failed/killed containers after this long",
    )
    reconciler_enabled: bool = Field(default=True)

    # Status notifier delivery
    notifier_max_attempts: int = Field(default=3, ge=1, le=20)
    notifier_retry_backoff_seconds: float = Field(default=0.5, ge=0, le=60)
    notifier_queue_size: int = Field(
        default=1000, ge=1, description="Undelivered events buffered per subscriber"
    )

    # Host capacity
    max_containers: int = Field(
        default=0, ge=0, description="Ceiling on live containers; 0 is unlimited"
    )
    capacity_memory_threshold_percent: float = Field(
        default=90.0, ge=0, le=100, description="Refuse starts at this memory usage"
    )
    capacity_cpu_threshold_percent: float = Field(default=90.0, ge=0, le=100)

    # Endpoint resolution
    ide_domain: str = Field(default="localhost")
    ide_remote_base_url: Optional[str] = Field(default=None)
    ide_local_base_url: str = Field(default="http://localhost")
    terminal_port: int = Field(default=7681, ge=1, le=65535)
    vnc_port: int = Field(default=6080, ge=1, le=65535)
    web_server_port: int = Field(default=3000, ge=1, le=65535)
    code_server_port: int = Field(default=8080, ge=1, le=65535)

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    enable_access_logs: bool = Field(default=True)

    # Development Configuration
    enable_cors: bool = Field(default=False)
    cors_origins: List[str] = Field(default_factory=list)
    enable_docs: bool = Field(default=True)

    # ========================================================================
    # VALIDATORS
    # ========================================================================

    @field_validator("state_backend")
    @classmethod
    def validate_state_backend(cls, v):
        v = v.lower().strip()
        if v not in ("memory", "redis"):
            raise ValueError("state_backend must be 'memory' or 'redis'")
        return v

    @field_validator("runtime_backend")
    @classmethod
    def validate_runtime_backend(cls, v):
        v = v.lower().strip()
        if v not in ("docker", "memory"):
            raise ValueError("runtime_backend must be 'docker' or 'memory'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @field_validator("ide_remote_base_url", "ide_local_base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("Base URLs must include the http:// or https:// scheme")
        return v.rstrip("/")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # ========================================================================
    # GROUPED CONFIG ACCESS
    # ========================================================================

    @property
    def api(self) -> APIConfig:
        """Access API configuration group."""
        return APIConfig(
            api_host=self.api_host,
            api_port=self.api_port,
            api_debug=self.api_debug,
            api_reload=self.api_reload,
            api_key=self.api_key,
            rate_limit_enabled=self.rate_limit_enabled,
            rate_limit_requests=self.rate_limit_requests,
            rate_limit_window_seconds=self.rate_limit_window_seconds,
            enable_cors=self.enable_cors,
            cors_origins=self.cors_origins,
            enable_docs=self.enable_docs,
        )

    @property
    def redis(self) -> RedisConfig:
        """Access Redis configuration group."""
        return RedisConfig(
            redis_host=self.redis_host,
            redis_port=self.redis_port,
            redis_password=self.redis_password,
            redis_db=self.redis_db,
            redis_url=self.redis_url,
            redis_max_connections=self.redis_max_connections,
            redis_socket_timeout=self.redis_socket_timeout,
            redis_socket_connect_timeout=self.redis_socket_connect_timeout,
            redis_key_prefix=self.redis_key_prefix,
        )

    @property
    def ide(self) -> IDEConfig:
        """Access IDE lifecycle configuration group."""
        return IDEConfig(
            state_backend=self.state_backend,
            runtime_backend=self.runtime_backend,
            docker_base_url=self.docker_base_url,
            ide_container_image=self.ide_container_image,
            ide_network=self.ide_network,
            container_cpu_limit=self.container_cpu_limit,
            container_memory_limit=self.container_memory_limit,
            inactivity_timeout_seconds=self.inactivity_timeout_seconds,
            management_api_url=self.management_api_url,
            ide_id_length=self.ide_id_length,
            ide_id_max_attempts=self.ide_id_max_attempts,
            ide_readable_ids=self.ide_readable_ids,
            runtime_create_timeout=self.runtime_create_timeout,
            runtime_inspect_timeout=self.runtime_inspect_timeout,
            runtime_destroy_timeout=self.runtime_destroy_timeout,
            execution_timeout=self.execution_timeout,
            status_poll_interval_seconds=self.status_poll_interval_seconds,
            terminal_retention_minutes=self.terminal_retention_minutes,
            notifier_max_attempts=self.notifier_max_attempts,
            notifier_retry_backoff_seconds=self.notifier_retry_backoff_seconds,
            notifier_queue_size=self.notifier_queue_size,
            max_containers=self.max_containers,
            capacity_memory_threshold_percent=self.capacity_memory_threshold_percent,
            capacity_cpu_threshold_percent=self.capacity_cpu_threshold_percent,
        )

    @property
    def endpoints(self) -> EndpointsConfig:
        """Access endpoint resolution configuration group."""
        return EndpointsConfig(
            ide_domain=self.ide_domain,
            ide_remote_base_url=self.ide_remote_base_url,
            ide_local_base_url=self.ide_local_base_url,
            terminal_port=self.terminal_port,
            vnc_port=self.vnc_port,
            web_server_port=self.web_server_port,
            code_server_port=self.code_server_port,
        )

    @property
    def logging(self) -> LoggingConfig:
        """Access logging configuration group."""
        return LoggingConfig(
            log_level=self.log_level,
            log_format=self.log_format,
            enable_access_logs=self.enable_access_logs,
        )

    # ========================================================================
    # HELPER METHODS
    # ========================================================================

    def get_redis_url(self) -> str:
        """Get Redis connection URL."""
        return self.redis.get_url()


# Global settings instance
settings = Settings()

__all__ = [
    "Settings",
    "settings",
    # Grouped configs
    "APIConfig",
    "RedisConfig",
    "LoggingConfig",
    "IDEConfig",
    "EndpointsConfig",
]
