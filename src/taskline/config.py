from __future__ import annotations

from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TASKLINE_", env_file=".env", extra="ignore")

    app_name: str = "taskline"

    # Composition root loaded by the CLI ("package.module:attribute")
    app: str | None = None

    # Instance ID used as the default worker name
    instance_id: str = Field(default_factory=lambda: str(uuid4())[:8])

    # Redis backend
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "taskline"

    # Observability
    log_level: str = "INFO"
    log_json: bool = False
    enable_metrics: bool = True

    # Worker defaults
    worker_sleep: float = 3.0
    worker_timeout: int = 60
    worker_prune_interval: int = 600

    # Scheduler loop
    scheduler_interval: float = 60.0


settings = Settings()
