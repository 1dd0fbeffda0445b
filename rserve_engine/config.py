#rserve_engine\config.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine configuration from environment variables (prefix RSERVE_)."""

    model_config = SettingsConfigDict(
        env_prefix="RSERVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Docker
    docker_base_url: str = "unix:///var/run/docker.sock"
    network_name: str = "rserve-proxy_default"
    image_prefix: str = "rserve-app"
    base_image: str = "rserve-base"
    rserve_port: int = 6311
    git_clone_timeout_seconds: int = 120

    # Health monitor
    health_interval_seconds: float = 15.0

    # Metrics collector
    metrics_interval_seconds: float = 10.0
    metrics_buffer_size: Optional[int] = None  # None: one hour at the interval
    prune_every_n_cycles: int = 6
    retention_days: int = 7
    traefik_metrics_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"


settings = EngineSettings()
