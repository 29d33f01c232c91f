"""Pydantic models for configuration."""

from datetime import timedelta
from typing import Literal

from pydantic import BaseModel, Field


class SchedulerConfig(BaseModel):
    """Scheduler loop timing and concurrency."""

    tick_interval_s: float = Field(
        default=60.0, gt=0.0, description="Seconds between scheduler ticks"
    )
    generation_lead_time_s: float = Field(
        default=300.0, ge=0.0, description="Start generation this many seconds before publish time"
    )
    max_concurrent_users: int = Field(
        default=4, ge=1, description="Users processed in parallel within one tick"
    )
    media_concurrency: int = Field(
        default=1, ge=1, description="Post-processing operations allowed in flight process-wide"
    )

    @property
    def generation_lead_time(self) -> timedelta:
        return timedelta(seconds=self.generation_lead_time_s)


class StorageConfig(BaseModel):
    """On-disk locations."""

    queue_dir: str = Field(default="data/queues", description="Per-user JSON queue snapshots")
    audit_db: str = Field(default="data/audit.db", description="SQLite audit trail")
    work_dir: str = Field(default="data/videos", description="Generated and processed videos")


class GenerationConfig(BaseModel):
    """Replicate video generation settings."""

    model: str = Field(default="bytedance/seedance-1-pro", description="Replicate model slug")
    api_token_env: str = Field(
        default="REPLICATE_API_TOKEN", description="Environment variable holding the API token"
    )
    base_url: str = Field(
        default="https://api.replicate.com/v1",
        description="API base URL (REPLICATE_PROXY_URL overrides)",
    )
    resolution: str = Field(default="1080p", description="Output resolution")
    fps: int = Field(default=24, gt=0, description="Output frame rate")
    camera_fixed: bool = Field(default=False, description="Lock the camera")
    quick_poll_count: int = Field(
        default=10, ge=0, description="Polls at the quick interval before slowing down"
    )
    quick_poll_interval_s: float = Field(default=2.0, ge=0.0, description="Early poll interval")
    poll_interval_s: float = Field(default=5.0, ge=0.0, description="Poll interval after warm-up")
    max_poll_attempts: int = Field(
        default=240, gt=0, description="Polls before giving up with GenerationTimeout"
    )
    request_timeout_s: float = Field(default=60.0, gt=0.0, description="Per-request HTTP timeout")


class PostProcessingConfig(BaseModel):
    """FFmpeg post-processing settings."""

    timeout_s: int = Field(
        default=600, gt=0, description="Maximum duration for any FFmpeg step in seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    threads: int = Field(default=1, ge=0, description="Encoder threads (0 = ffmpeg default)")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
    ] = Field(default="ultrafast", description="Encoding speed preset")
    crf: int = Field(
        default=28, ge=0, le=51, description="Constant Rate Factor (0-51, lower = better quality)"
    )
    border_width: int = Field(default=3, ge=0, description="Caption outline width in px")
    caption_margin_px: int = Field(
        default=120, ge=0, description="Caption distance from top/bottom edge"
    )
    music_tail_s: float = Field(
        default=15.0, ge=0.0, description="Seconds at the end of a track never used as a start"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save FFmpeg logs and commands on failure for debugging"
    )


class UploadConfig(BaseModel):
    """YouTube upload settings."""

    client_id_env: str = Field(
        default="YOUTUBE_CLIENT_ID", description="Environment variable holding the OAuth client id"
    )
    client_secret_env: str = Field(
        default="YOUTUBE_CLIENT_SECRET",
        description="Environment variable holding the OAuth client secret",
    )
    token_uri: str = Field(default="https://oauth2.googleapis.com/token")
    category_id: str = Field(default="22", description="YouTube category (22 = People & Blogs)")
    delete_after_upload: bool = Field(
        default=True, description="Remove the local video after the upload attempt"
    )


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(default="%(asctime)s %(levelname)s [%(name)s] %(message)s")


class AppConfig(BaseModel):
    """Complete application configuration with validation."""

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    post_processing: PostProcessingConfig = Field(default_factory=PostProcessingConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)
