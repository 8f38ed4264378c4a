"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class PersistenceSettings(BaseModel):
    """Checkpoint store configuration."""

    enabled: bool = Field(default=True, description="Persist job snapshots to disk")
    storage_dir: str = Field(default=".jobrunner-jobs", description="Directory holding job snapshots")
    auto_save_interval: float = Field(
        default=30.0, gt=0, description="Seconds between auto-saves of running jobs"
    )
    max_stored_jobs: int = Field(default=100, ge=1, description="Maximum number of snapshots kept")
    compression_enabled: bool = Field(default=False, description="Gzip snapshots before writing")
    retention_days: int = Field(
        default=30, ge=0, description="Delete snapshots older than this many days (0 disables)"
    )
    retention_sweep_interval: float = Field(
        default=3600.0, gt=0, description="Seconds between periodic retention sweeps"
    )


class SchedulerSettings(BaseModel):
    """Job scheduler configuration."""

    max_concurrent_jobs: int = Field(default=3, ge=1, description="Jobs allowed to run at once")
    default_timeout: float = Field(
        default=300.0, gt=0, description="Per-file timeout hint passed to the pipeline (seconds)"
    )
    enable_progress_tracking: bool = Field(default=True, description="Track and save job progress")
    auto_cleanup_completed: bool = Field(
        default=False, description="Delete completed jobs after auto_cleanup_delay"
    )
    auto_cleanup_delay: float = Field(default=60.0, ge=0, description="Seconds before auto-deletion")
    progress_save_interval: float = Field(
        default=10.0, ge=0, description="Minimum seconds between progress-triggered saves"
    )
    tick_interval: float = Field(default=1.0, gt=0, description="Queue admission tick (seconds)")
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)


class Settings(BaseSettings):
    """Central configuration for the job runner service."""

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Scheduler
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "JOBRUNNER_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }


# Singleton instance
settings = Settings()
