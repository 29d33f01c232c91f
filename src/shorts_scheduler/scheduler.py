"""Periodic driver that moves queued jobs through generate → publish.

Each tick takes a snapshot of the users with queued jobs, processes users
concurrently (bounded), and within a user walks the eligible jobs in
publish-time order:

1. Generation, once ``scheduled_time - now <= generation_lead_time``.
2. Upload, once ``scheduled_time <= now`` and the artifact exists.

Job-level failures are recorded on the job and never abort the tick.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Set

from .errors import ArtifactMissing, InvalidTransition, error_kind
from .queue.manager import QueueManager
from .queue.models import JobStatus, ScheduledJob, utcnow
from .stages.base import (
    GenerationRequest,
    PostProcessor,
    PublishMetadata,
    Uploader,
    VideoGenerator,
)

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 500
COUNTER_KEYS = ("generated", "generation_failed", "uploaded", "failed", "errors", "purged")


def _message(exc: BaseException) -> str:
    text = str(exc) or type(exc).__name__
    return text[:ERROR_MESSAGE_LIMIT]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Scheduler:
    """Tick-based job processor.

    Example:
        >>> scheduler = Scheduler(manager, generator, uploader, post_processor)
        >>> await scheduler.start()
        >>> ...
        >>> await scheduler.stop(timeout=30)
    """

    def __init__(
        self,
        manager: QueueManager,
        generator: VideoGenerator,
        uploader: Uploader,
        post_processor: Optional[PostProcessor] = None,
        *,
        tick_interval_s: float = 60.0,
        generation_lead_time: timedelta = timedelta(minutes=5),
        max_concurrent_users: int = 4,
        media_concurrency: int = 1,
        delete_after_upload: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the scheduler.

        Args:
            manager: Queue manager holding every user's jobs
            generator: Video generation collaborator
            uploader: Upload collaborator
            post_processor: Optional caption/music collaborator
            tick_interval_s: Seconds between ticks when started
            generation_lead_time: How early before publish time to generate
            max_concurrent_users: Users processed in parallel per tick
            media_concurrency: Post-processing calls allowed in flight
            delete_after_upload: Remove the artifact after an upload attempt
            clock: Returns the current time (tz-aware); defaults to UTC now
        """
        self.manager = manager
        self.generator = generator
        self.uploader = uploader
        self.post_processor = post_processor
        self.tick_interval_s = tick_interval_s
        self.generation_lead_time = generation_lead_time
        self.max_concurrent_users = max(1, max_concurrent_users)
        self.delete_after_upload = delete_after_upload
        self._clock = clock or utcnow

        self._media_semaphore = asyncio.Semaphore(max(1, media_concurrency))
        self._tick_lock = asyncio.Lock()
        self._in_flight: Set[str] = set()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the tick loop on the running event loop."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="shorts-scheduler")
        logger.info(f"Scheduler started (tick every {self.tick_interval_s:g}s)")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Ask the loop to exit and wait for it.

        The loop finishes its current tick first. After ``timeout`` seconds
        the task is cancelled; in-flight collaborator calls then receive
        CancelledError and their jobs are recovered on the next load.
        """
        self._stop_event.set()
        task = self._task
        if task is None:
            return

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Scheduler did not stop in time; cancelling in-flight work")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
        logger.info("Scheduler stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval_s)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run one pass over every user's queue.

        Args:
            now: Evaluation time (defaults to the injected clock)

        Returns:
            Counters: generated, generation_failed, uploaded, failed,
            errors, purged
        """
        async with self._tick_lock:
            now = _as_utc(now or self._clock())
            counters = dict.fromkeys(COUNTER_KEYS, 0)
            semaphore = asyncio.Semaphore(self.max_concurrent_users)

            async def run_user(user_id: str) -> None:
                async with semaphore:
                    await self._process_user(user_id, now, counters)

            user_ids = self.manager.user_ids()
            results = await asyncio.gather(
                *(run_user(user_id) for user_id in user_ids), return_exceptions=True
            )
            for user_id, result in zip(user_ids, results):
                if isinstance(result, Exception):
                    logger.error(f"[{user_id}] Queue processing failed: {result}")

            self.ticks += 1
            if any(counters.values()):
                logger.info(
                    "Tick: "
                    + ", ".join(f"{key}={value}" for key, value in counters.items() if value)
                )
            return counters

    async def _process_user(self, user_id: str, now: datetime, counters: Dict[str, int]) -> None:
        for job in self.manager.eligible_jobs(user_id):
            if self._stop_event.is_set():
                break
            if job.job_id in self._in_flight:
                continue

            self._in_flight.add(job.job_id)
            try:
                await self._process_job(job, now, counters)
            except Exception as e:
                logger.exception(f"[{user_id}] Unexpected error processing {job.job_id}")
                if await self._mark_error(job, e):
                    counters["errors"] += 1
            finally:
                self._in_flight.discard(job.job_id)

        counters["purged"] += len(await asyncio.to_thread(self.manager.purge_terminal, user_id))

    async def _process_job(self, job: ScheduledJob, now: datetime, counters: Dict[str, int]) -> None:
        if self.due_for_generation(job, now):
            job = await self._generate(job, now, counters)
            if job is None:
                return

        if self.due_for_upload(job, now):
            await self._upload(job, now, counters)

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def due_for_generation(self, job: ScheduledJob, now: datetime) -> bool:
        return (
            job.status == JobStatus.PENDING
            and job.needs_generation
            and not job.file_path
            and job.scheduled_time - now <= self.generation_lead_time
        )

    def due_for_upload(self, job: ScheduledJob, now: datetime) -> bool:
        if job.scheduled_time > now:
            return False
        if job.status == JobStatus.GENERATED_READY:
            return True
        return job.status == JobStatus.PENDING and job.has_presupplied_file

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _generate(
        self, job: ScheduledJob, now: datetime, counters: Dict[str, int]
    ) -> Optional[ScheduledJob]:
        user_id = job.user_id
        claimed = await self._update(
            user_id,
            job.job_id,
            JobStatus.GENERATING,
            expected_status=JobStatus.PENDING,
            started_at=now,
        )
        if claimed is None:
            return None

        logger.info(f"[{user_id}] Generating {claimed.file_name} (publish at {claimed.scheduled_time:%H:%M})")
        raw_path = None
        try:
            video = await self.generator.generate(GenerationRequest.from_job(claimed))
            raw_path = video.local_path
            final_path = raw_path
            if self.post_processor is not None and claimed.post_processing.has_work:
                async with self._media_semaphore:
                    final_path = await self.post_processor.process(raw_path, claimed.post_processing)
        except Exception as e:
            logger.error(f"[{user_id}] Generation failed for {claimed.file_name}: {e}")
            if raw_path:
                self._remove_artifact(raw_path)
            await self._update(
                user_id,
                job.job_id,
                JobStatus.GENERATION_FAILED,
                error_message=_message(e),
                error_kind=error_kind(e),
            )
            counters["generation_failed"] += 1
            return None

        ready = await self._update(
            user_id,
            job.job_id,
            JobStatus.GENERATED_READY,
            file_path=final_path,
            source_url=video.source_url,
            generated_at=self._clock(),
        )
        if ready is None:
            self._remove_artifact(final_path)
            return None

        counters["generated"] += 1
        logger.info(f"[{user_id}] Generated {ready.file_name}")
        return ready

    async def _upload(self, job: ScheduledJob, now: datetime, counters: Dict[str, int]) -> None:
        user_id = job.user_id
        path = job.file_path

        if not path or not os.path.exists(path):
            missing = ArtifactMissing(f"Artifact missing at publish time: {path or '(none)'}")
            logger.error(f"[{user_id}] {missing}")
            failed = await self._update(
                user_id,
                job.job_id,
                JobStatus.FAILED,
                expected_status=job.status,
                error_message=_message(missing),
                error_kind=missing.kind,
            )
            if failed is not None:
                counters["failed"] += 1
            return

        claimed = await self._update(
            user_id,
            job.job_id,
            JobStatus.UPLOADING,
            expected_status=job.status,
            started_at=now,
        )
        if claimed is None:
            return

        logger.info(f"[{user_id}] Uploading {claimed.file_name}")
        try:
            url = await self.uploader.upload(
                path, PublishMetadata.from_job(claimed), claimed.credential_ref
            )
        except Exception as e:
            logger.error(f"[{user_id}] Upload failed for {claimed.file_name}: {e}")
            await self._update(
                user_id,
                job.job_id,
                JobStatus.FAILED,
                error_message=_message(e),
                error_kind=error_kind(e),
            )
            counters["failed"] += 1
        else:
            await self._update(
                user_id,
                job.job_id,
                JobStatus.COMPLETED,
                uploaded_url=url,
                completed_at=self._clock(),
            )
            counters["uploaded"] += 1
            logger.info(f"[{user_id}] Published {claimed.file_name}: {url}")

        if self.delete_after_upload:
            self._remove_artifact(path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _update(self, user_id: str, job_id: str, status: JobStatus, **kwargs) -> Optional[ScheduledJob]:
        # Snapshot and audit writes block; keep them off the event loop
        return await asyncio.to_thread(self.manager.update_status, user_id, job_id, status, **kwargs)

    async def _mark_error(self, job: ScheduledJob, exc: Exception) -> bool:
        """Move a job to ``error``. Returns False if it could not be moved."""
        try:
            updated = await self._update(
                job.user_id,
                job.job_id,
                JobStatus.ERROR,
                error_message=_message(exc),
                error_kind=error_kind(exc),
            )
        except InvalidTransition as e:
            logger.error(f"[{job.user_id}] Could not mark {job.job_id} as error: {e}")
            return False
        return updated is not None

    @staticmethod
    def _remove_artifact(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
