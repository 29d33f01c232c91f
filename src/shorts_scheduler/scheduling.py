"""Bulk schedule registration.

Turns "these N videos, spread over the next H hours" into N queued jobs with
publish times, titles, descriptions and tags, registered as one batch.
"""

import logging
import random
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .queue.manager import QueueManager
from .queue.models import PostProcessingOptions, ScheduledJob, utcnow
from .stages.base import PublishMetadata

logger = logging.getLogger(__name__)

NUMBER_PLACEHOLDER = "#NUMBER"
PREVIEW_START_DELAY = timedelta(minutes=5)


class ScheduleSettings(BaseModel):
    """How publish times are spread over a window."""

    hours: float = Field(default=2.0, gt=0.0, description="Window length in hours")
    min_interval_minutes: int = Field(
        default=7, ge=0, description="Minimum spacing between consecutive uploads"
    )
    randomize_order: bool = Field(default=True, description="Shuffle items before assigning times")
    start_time: Optional[datetime] = Field(
        default=None, description="Window start (default: now + 5 minutes)"
    )

    @field_validator("start_time")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class UploadOptions(BaseModel):
    """Publish metadata shared by every item of a registration."""

    title_template: str = Field(default="", description="Title; #NUMBER becomes #1, #2, ...")
    description: str = ""
    tags: str = Field(default="", description="Comma-separated tags")
    privacy: str = Field(default="private", pattern="^(private|unlisted|public)$")
    use_random_info: bool = False
    random_titles: List[str] = Field(default_factory=list)
    random_descriptions: List[str] = Field(default_factory=list)
    random_tags: List[str] = Field(default_factory=list, description="Comma-separated tag sets")


class GenerationSpec(BaseModel):
    """One video to generate before publishing."""

    prompt: str = Field(..., min_length=1)
    duration: int = Field(default=5, ge=1)
    aspect_ratio: str = "9:16"
    image_url: Optional[str] = None
    post_processing: PostProcessingOptions = Field(default_factory=PostProcessingOptions)


class SchedulePreviewItem(BaseModel):
    index: int
    scheduled_time: datetime


def _window_start(settings: ScheduleSettings, now: Optional[datetime]) -> datetime:
    return settings.start_time or (now or utcnow()) + PREVIEW_START_DELAY


def spread_upload_times(
    start: datetime,
    count: int,
    hours: float,
    min_interval_minutes: int,
    rng: Optional[random.Random] = None,
) -> List[datetime]:
    """Pick one random time inside each of ``count`` equal segments of the window.

    When the window is long enough to hold ``count * min_interval_minutes``,
    a time that lands within ``min_interval_minutes`` of its segment start is
    pushed to ``segment_start + min_interval_minutes`` (never past the window
    end). The first item is never pushed.

    Returns:
        ``count`` times in segment order (ascending)
    """
    rng = rng or random.Random()
    if count <= 0:
        return []

    total_minutes = hours * 60
    segment_minutes = total_minutes / count
    spacing_fits = total_minutes > count * min_interval_minutes

    times = []
    for index in range(count):
        segment_start = index * segment_minutes
        segment_end = min((index + 1) * segment_minutes, total_minutes)
        offset = segment_start + rng.random() * (segment_end - segment_start)

        if index > 0 and spacing_fits and offset - segment_start < min_interval_minutes:
            offset = segment_start + min_interval_minutes

        offset = min(offset, total_minutes)
        times.append(start + timedelta(minutes=offset))
    return times


def preview_schedule(
    count: int,
    settings: ScheduleSettings,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> List[SchedulePreviewItem]:
    """Evenly spaced preview times starting five minutes from now.

    The interval is ``hours * 60 / (count - 1)`` whole minutes, never less
    than the minimum interval. With ``randomize_order`` the times are
    shuffled across item indexes. The result is sorted by time.
    """
    rng = rng or random.Random()
    if count <= 0:
        return []

    start = _window_start(settings, now)
    total_minutes = int(settings.hours * 60)
    interval = total_minutes // (count - 1) if count > 1 else 0
    interval = max(interval, settings.min_interval_minutes)

    times = [start + timedelta(minutes=i * interval) for i in range(count)]
    if settings.randomize_order and count > 1:
        rng.shuffle(times)

    preview = [
        SchedulePreviewItem(index=i + 1, scheduled_time=t) for i, t in enumerate(times)
    ]
    return sorted(preview, key=lambda p: p.scheduled_time)


def render_title(template: str, index: int, total: int) -> str:
    """Substitute the #NUMBER placeholder for item ``index`` (0-based)."""
    if total > 1:
        return template.replace(NUMBER_PLACEHOLDER, f"#{index + 1}")
    return template.replace(f" {NUMBER_PLACEHOLDER}", "").replace(NUMBER_PLACEHOLDER, "")


def _split_tags(tags: str) -> List[str]:
    return [t.strip() for t in tags.split(",") if t.strip()]


def assign_publish_metadata(
    options: UploadOptions, count: int, rng: Optional[random.Random] = None
) -> List[PublishMetadata]:
    """Title, description and tags for each of ``count`` items.

    With ``use_random_info``, each non-empty pool is shuffled once and item
    ``i`` takes entry ``i % len(pool)``; empty pools fall back to the
    template values.
    """
    rng = rng or random.Random()

    titles: List[str] = []
    descriptions: List[str] = []
    tag_sets: List[str] = []
    if options.use_random_info:
        titles = list(options.random_titles)
        descriptions = list(options.random_descriptions)
        tag_sets = list(options.random_tags)
        for pool in (titles, descriptions, tag_sets):
            rng.shuffle(pool)

    metadata = []
    for i in range(count):
        title = titles[i % len(titles)] if titles else render_title(options.title_template, i, count)
        description = descriptions[i % len(descriptions)] if descriptions else options.description
        tags = tag_sets[i % len(tag_sets)] if tag_sets else options.tags
        metadata.append(
            PublishMetadata(
                title=title,
                description=description,
                tags=_split_tags(tags),
                privacy=options.privacy,
            )
        )
    return metadata


def register_uploads(
    manager: QueueManager,
    user_id: str,
    credential_ref: str,
    file_paths: List[str],
    options: UploadOptions,
    settings: ScheduleSettings,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> List[ScheduledJob]:
    """Queue already-produced videos for publishing across the window.

    Returns:
        Copies of the queued jobs (one batch, batch_id set), in publish-time order

    Raises:
        pydantic.ValidationError: If a job cannot be built (e.g. an empty path)
    """
    rng = rng or random.Random()
    paths = list(file_paths)
    if settings.randomize_order:
        rng.shuffle(paths)

    times = spread_upload_times(
        _window_start(settings, now), len(paths), settings.hours, settings.min_interval_minutes, rng
    )
    metadata = assign_publish_metadata(options, len(paths), rng)

    jobs = []
    for path, scheduled_time, meta in zip(paths, times, metadata):
        jobs.append(
            ScheduledJob(
                file_name=path.replace("\\", "/").rsplit("/", 1)[-1],
                file_path=path,
                user_id=user_id,
                credential_ref=credential_ref,
                scheduled_time=scheduled_time,
                title=meta.title,
                description=meta.description,
                tags=meta.tags,
                privacy=meta.privacy,
            )
        )

    ids = manager.add_many(user_id, jobs)
    jobs = [manager.get(user_id, job_id) for job_id in ids]
    logger.info(f"[{user_id}] Scheduled {len(jobs)} upload(s) over {settings.hours:g}h")
    return jobs


def register_generation_uploads(
    manager: QueueManager,
    user_id: str,
    credential_ref: str,
    videos: List[GenerationSpec],
    options: UploadOptions,
    settings: ScheduleSettings,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> List[ScheduledJob]:
    """Queue videos that are generated shortly before their publish time.

    Returns:
        Copies of the queued jobs (one batch, batch_id set), in publish-time order

    Raises:
        pydantic.ValidationError: If a job cannot be built (e.g. an empty path)
    """
    rng = rng or random.Random()
    specs = list(videos)
    if settings.randomize_order:
        rng.shuffle(specs)

    times = spread_upload_times(
        _window_start(settings, now), len(specs), settings.hours, settings.min_interval_minutes, rng
    )
    metadata = assign_publish_metadata(options, len(specs), rng)

    jobs = []
    for spec, scheduled_time, meta in zip(specs, times, metadata):
        jobs.append(
            ScheduledJob(
                user_id=user_id,
                credential_ref=credential_ref,
                scheduled_time=scheduled_time,
                needs_generation=True,
                prompt=spec.prompt,
                duration=spec.duration,
                aspect_ratio=spec.aspect_ratio,
                image_url=spec.image_url,
                post_processing=spec.post_processing,
                title=meta.title,
                description=meta.description,
                tags=meta.tags,
                privacy=meta.privacy,
            )
        )

    ids = manager.add_many(user_id, jobs)
    jobs = [manager.get(user_id, job_id) for job_id in ids]
    logger.info(f"[{user_id}] Scheduled {len(jobs)} generated upload(s) over {settings.hours:g}h")
    return jobs
