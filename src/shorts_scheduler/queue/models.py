"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system:
the scheduled job itself, its state machine, batch bookkeeping, and the
audit records written by the audit log.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → generating          (generation lead time reached)
        pending → uploading           (pre-supplied file, publish time reached)
        generating → generated_ready  (generator + post-processing succeeded)
        generating → generation_failed
        generated_ready → uploading   (publish time reached, artifact on disk)
        uploading → completed
        uploading → failed
        pending|generated_ready → failed  (artifact missing at publish time)
        * (active) → error            (unexpected exception)
    """

    PENDING = "pending"  # Queued, nothing started
    GENERATING = "generating"  # Generation call in flight
    GENERATED_READY = "generated_ready"  # Artifact on disk, waiting for publish time
    UPLOADING = "uploading"  # Upload call in flight
    COMPLETED = "completed"  # Published
    GENERATION_FAILED = "generation_failed"  # Generator or post-processor failed
    FAILED = "failed"  # Upload failed or artifact missing
    ERROR = "error"  # Unexpected exception during orchestration

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.GENERATION_FAILED,
        JobStatus.FAILED,
        JobStatus.ERROR,
    }
)

ACTIVE_STATUSES = frozenset(set(JobStatus) - TERMINAL_STATUSES)

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.GENERATING, JobStatus.UPLOADING, JobStatus.FAILED, JobStatus.ERROR}
    ),
    JobStatus.GENERATING: frozenset(
        {JobStatus.GENERATED_READY, JobStatus.GENERATION_FAILED, JobStatus.ERROR}
    ),
    JobStatus.GENERATED_READY: frozenset(
        {JobStatus.UPLOADING, JobStatus.FAILED, JobStatus.ERROR}
    ),
    JobStatus.UPLOADING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ERROR}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.GENERATION_FAILED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.ERROR: frozenset(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    """Check whether ``current → new`` is an edge of the state graph."""
    return JobStatus(new) in ALLOWED_TRANSITIONS[JobStatus(current)]


class PostProcessingOptions(BaseModel):
    """Caption overlay and background music settings for a generated video.

    ``caption_position``, ``caption_size`` and ``caption_color`` accept the
    literal value ``"random"``; the post-processor picks a concrete value
    per video.
    """

    enabled: bool = Field(default=False, description="Run post-processing after generation")
    caption_text: Optional[str] = Field(default=None, description="Caption overlay text")
    caption_position: str = Field(default="bottom", description="top, center, bottom or random")
    caption_size: str = Field(default="80", description="Font size in px or random")
    caption_color: str = Field(default="white", description="Font color name or random")
    music_path: Optional[str] = Field(default=None, description="Background music file")
    music_volume: float = Field(default=0.3, ge=0.0, le=2.0, description="Music volume factor")

    @property
    def has_work(self) -> bool:
        return self.enabled and bool(self.caption_text or self.music_path)


class ScheduledJob(BaseModel):
    """One scheduled unit of generate / post-process / publish work.

    Unknown fields are ignored and every field added after the first
    release has a default, so older and newer snapshots both load.
    """

    model_config = ConfigDict(extra="ignore")

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Job identifier")
    file_name: str = Field(default="", description="Generated artifact filename")
    user_id: str = Field(default="", description="Owning user")
    credential_ref: str = Field(default="", description="Refresh token used at upload time")
    batch_id: Optional[str] = Field(default=None, description="Batch the job was added to")

    scheduled_time: datetime = Field(..., description="When publication should occur")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")

    # Generation inputs
    needs_generation: bool = Field(default=False, description="Generate before upload")
    prompt: Optional[str] = Field(default=None, description="Generation prompt")
    duration: int = Field(default=5, ge=1, description="Video duration in seconds")
    aspect_ratio: str = Field(default="9:16", description="Output aspect ratio")
    image_url: Optional[str] = Field(default=None, description="Optional image seed")
    post_processing: PostProcessingOptions = Field(default_factory=PostProcessingOptions)

    # Produced artifact
    file_path: str = Field(default="", description="Local artifact path")
    source_url: Optional[str] = Field(default=None, description="URL returned by the generator")

    # Publish inputs
    title: str = Field(default="", description="Video title")
    description: str = Field(default="", description="Video description")
    tags: List[str] = Field(default_factory=list, description="Video tags")
    privacy: Literal["private", "unlisted", "public"] = Field(default="private")

    # Outcome
    uploaded_url: Optional[str] = Field(default=None, description="Published URL")
    error_message: Optional[str] = Field(default=None, description="Last error (truncated)")
    error_kind: Optional[str] = Field(default=None, description="Error taxonomy name")
    created_at: datetime = Field(default_factory=utcnow, description="Queue time")
    started_at: Optional[datetime] = Field(default=None, description="Stage start time")
    generated_at: Optional[datetime] = Field(default=None, description="Artifact ready time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal time")

    @field_validator("scheduled_time", "created_at", "started_at", "generated_at", "completed_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are read as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v

    @model_validator(mode="after")
    def check_inputs(self) -> "ScheduledJob":
        if not self.file_name:
            self.file_name = f"{self.job_id}.mp4"
        if self.status == JobStatus.PENDING:
            if self.needs_generation and not (self.prompt or "").strip():
                raise ValueError("prompt is required when needs_generation is set")
            if self.needs_generation and self.file_path:
                raise ValueError("file_path must be empty when needs_generation is set")
            if not self.needs_generation and not self.file_path:
                raise ValueError("file_path is required when needs_generation is not set")
        return self

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal

    @property
    def has_presupplied_file(self) -> bool:
        return not self.needs_generation and bool(self.file_path)


class BatchInfo(BaseModel):
    """Counters for a user's current logical batch."""

    batch_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    started_at: datetime = Field(default_factory=utcnow)
    total: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    jobs: List[ScheduledJob] = Field(default_factory=list, description="Terminal job snapshots")


class BatchSummary(BaseModel):
    """Aggregate outcome handed to batch-completion listeners."""

    batch_id: str
    user_id: str
    success_count: int
    total_count: int
    started_at: datetime
    completed_at: datetime
    duration_s: float = Field(ge=0.0)
    jobs: List[ScheduledJob] = Field(default_factory=list)


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    user_id: str = Field(..., description="Owning user")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
