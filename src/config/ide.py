"""IDE container orchestration configuration."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IDEConfig(BaseSettings):
    """Runtime backend, identifier and lifecycle settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    # Backends
    state_backend: str = Field(default="memory")
    runtime_backend: str = Field(default="docker")

    # Docker runtime
    docker_base_url: Optional[str] = Field(default=None)
    ide_container_image: str = Field(default="ide-container:latest")
    ide_network: str = Field(default="ide-network")
    container_cpu_limit: float = Field(default=2.0, gt=0, le=64)
    container_memory_limit: int = Field(default=4294967296, ge=268435456)
    inactivity_timeout_seconds: int = Field(default=600, ge=60)
    management_api_url: str = Field(default="http://ide-management-api:3001")

    # Identifier allocation
    ide_id_length: int = Field(default=8, ge=4, le=32)
    ide_id_max_attempts: int = Field(default=10, ge=1, le=1000)
    ide_readable_ids: bool = Field(default=False)

    # Bounded runtime calls (seconds)
    runtime_create_timeout: float = Field(default=60.0, gt=0, le=600)
    runtime_inspect_timeout: float = Field(default=10.0, gt=0, le=120)
    runtime_destroy_timeout: float = Field(default=30.0, gt=0, le=300)
    execution_timeout: float = Field(default=30.0, gt=0, le=300)

    # Reconciliation
    status_poll_interval_seconds: int = Field(default=15, ge=1, le=3600)
    terminal_retention_minutes: int = Field(default=30, ge=1, le=10080)

    # Status notifier delivery
    notifier_max_attempts: int = Field(default=3, ge=1, le=20)
    notifier_retry_backoff_seconds: float = Field(default=0.5, ge=0, le=60)
    notifier_queue_size: int = Field(default=1000, ge=1)

    # Host capacity
    max_containers: int = Field(default=0, ge=0)
    capacity_memory_threshold_percent: float = Field(default=90.0, ge=0, le=100)
    capacity_cpu_threshold_percent: float = Field(default=90.0, ge=0, le=100)


class EndpointsConfig(BaseSettings):
    """Service URL templates for remote and local resolution."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    ide_domain: str = Field(default="localhost")
    ide_remote_base_url: Optional[str] = Field(default=None)
    ide_local_base_url: str = Field(default="http://localhost")

    terminal_port: int = Field(default=7681, ge=1, le=65535)
    vnc_port: int = Field(default=6080, ge=1, le=65535)
    web_server_port: int = Field(default=3000, ge=1, le=65535)
    code_server_port: int = Field(default=8080, ge=1, le=65535)

    terminal_path: str = Field(default="terminal")
    vnc_path: str = Field(default="vnc")
    web_server_path: str = Field(default="web")
    code_server_path: str = Field(default="code")
