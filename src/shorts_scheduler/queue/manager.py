"""Thread-safe in-memory job queues mirrored to a durable store.

The manager owns every user's job list. All reads return copies and all
writes go through a single re-entrant lock, followed by a full rewrite of
the user's durable snapshot. Long-running work (generation, upload) never
happens under the lock: callers copy a job out, do the work, and write the
result back with ``update_status``.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import InvalidTransition, JobExists, PersistenceFailure
from .backends import AuditLog, NullAuditLog, QueueStore
from .batch import BatchTracker
from .models import JobStatus, ScheduledJob, can_transition, utcnow

logger = logging.getLogger(__name__)

RECOVERY_NOTE = "recovered after restart"


class QueueManager:
    """Per-user job collections guarded by one lock.

    Features:
    - Every mutation persisted to the QueueStore (failures logged, memory stays authoritative)
    - Transitions validated against the job state graph
    - Compare-and-set claims via ``expected_status``
    - Terminal outcomes reported to the BatchTracker exactly once
    """

    def __init__(
        self,
        store: QueueStore,
        tracker: Optional[BatchTracker] = None,
        audit: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.tracker = tracker or BatchTracker()
        self.audit = audit or NullAuditLog()
        self._clock = clock or utcnow
        self._queues: Dict[str, List[ScheduledJob]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Internal helpers (call with the lock held)
    # ------------------------------------------------------------------

    def _persist(self, user_id: str) -> None:
        jobs = self._queues.get(user_id, [])
        try:
            self.store.save(user_id, jobs)
        except PersistenceFailure as e:
            logger.error(f"[{user_id}] {e}")

    def _find(self, user_id: str, job_id: str) -> Tuple[Optional[List[ScheduledJob]], int]:
        queue = self._queues.get(user_id)
        if queue:
            for i, job in enumerate(queue):
                if job.job_id == job_id:
                    return queue, i
        return queue, -1

    def _prepare(self, user_id: str, job: ScheduledJob) -> ScheduledJob:
        if job.status != JobStatus.PENDING:
            raise InvalidTransition(
                f"New jobs must be {JobStatus.PENDING.value}, got {job.status.value}"
            )
        queued = job.model_copy(deep=True)
        queued.user_id = user_id
        return queued

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def add(self, user_id: str, job: ScheduledJob) -> str:
        """Append a job to the user's queue and the user's current batch.

        Args:
            user_id: Owning user
            job: Pending job (copied; the caller's instance is not retained)

        Returns:
            The job id

        Raises:
            JobExists: If the user already has a job with this id
            InvalidTransition: If the job is not pending
        """
        return self.add_many(user_id, [job])[0]

    def add_many(self, user_id: str, jobs: Iterable[ScheduledJob]) -> List[str]:
        """Append several jobs under one lock and one persist.

        The jobs join the same batch. Nothing is added if any job is
        rejected.
        """
        with self._lock:
            queue = self._queues.get(user_id, [])
            seen = {job.job_id for job in queue}
            prepared = []
            for job in jobs:
                if job.job_id in seen:
                    raise JobExists(f"Job {job.job_id} is already queued for {user_id}")
                seen.add(job.job_id)
                prepared.append(self._prepare(user_id, job))

            if not prepared:
                return []

            batch_id = self.tracker.register(user_id, len(prepared))
            for job in prepared:
                job.batch_id = batch_id

            self._queues.setdefault(user_id, []).extend(prepared)
            self._persist(user_id)

        for job in prepared:
            self.audit.record_transition(user_id, job.job_id, None, JobStatus.PENDING.value)

        logger.info(f"[{user_id}] Queued {len(prepared)} job(s) (batch {batch_id[:8]})")
        return [job.job_id for job in prepared]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_jobs(self, user_id: str) -> List[ScheduledJob]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._queues.get(user_id, [])]

    def get(self, user_id: str, job_id: str) -> Optional[ScheduledJob]:
        with self._lock:
            queue, idx = self._find(user_id, job_id)
            return queue[idx].model_copy(deep=True) if idx >= 0 else None

    def count_active(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for job in self._queues.get(user_id, []) if not job.is_terminal)

    def eligible_jobs(self, user_id: str) -> List[ScheduledJob]:
        """Copies of jobs waiting for their next stage, earliest first."""
        with self._lock:
            waiting = [
                job.model_copy(deep=True)
                for job in self._queues.get(user_id, [])
                if job.status in (JobStatus.PENDING, JobStatus.GENERATED_READY)
            ]
        return sorted(waiting, key=lambda j: j.scheduled_time)

    def user_ids(self) -> List[str]:
        with self._lock:
            return [user_id for user_id, queue in self._queues.items() if queue]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_status(
        self,
        user_id: str,
        job_id: str,
        new_status: JobStatus,
        *,
        expected_status: Optional[JobStatus] = None,
        **fields,
    ) -> Optional[ScheduledJob]:
        """Atomically move a job to ``new_status`` and apply ``fields``.

        Args:
            user_id: Owning user
            job_id: Job identifier
            new_status: Target status
            expected_status: If given, only update when the job is currently
                in this status (claim semantics)
            **fields: Additional ScheduledJob fields to set

        Returns:
            Copy of the updated job, or None if the job is gone or the
            claim lost

        Raises:
            InvalidTransition: If ``current → new_status`` is not allowed
        """
        new_status = JobStatus(new_status)

        with self._lock:
            queue, idx = self._find(user_id, job_id)
            if idx < 0:
                updated = None
                previous = None
            else:
                current = queue[idx]
                previous = current.status
                if expected_status is not None and previous != JobStatus(expected_status):
                    return None
                if not can_transition(previous, new_status):
                    raise InvalidTransition(
                        f"Job {job_id}: {previous.value} → {new_status.value} is not allowed"
                    )

                data = current.model_dump()
                data.update(fields)
                data["status"] = new_status
                if new_status.is_terminal and data.get("completed_at") is None:
                    data["completed_at"] = self._clock()

                updated = ScheduledJob.model_validate(data)
                queue[idx] = updated
                self._persist(user_id)
                updated = updated.model_copy(deep=True)

        if updated is None:
            logger.warning(
                f"[{user_id}] Job {job_id} no longer queued; dropped {new_status.value} update"
            )
            self.audit.record_transition(
                user_id, job_id, None, new_status.value, error="job removed before update"
            )
            return None

        self.audit.record_transition(
            user_id, job_id, previous.value, new_status.value, error=fields.get("error_message")
        )

        if new_status.is_terminal:
            self.tracker.record_outcome(
                user_id,
                new_status == JobStatus.COMPLETED,
                job=updated,
                batch_id=updated.batch_id,
            )
        return updated

    def clear_all(self, user_id: str) -> int:
        """Remove every job for the user and reset the batch counters.

        Returns:
            Number of jobs removed
        """
        with self._lock:
            removed = self._queues.pop(user_id, [])
            self.tracker.reset(user_id)
            self._persist(user_id)

        logger.info(f"[{user_id}] Cleared {len(removed)} job(s)")
        return len(removed)

    def purge_terminal(self, user_id: str) -> List[ScheduledJob]:
        """Drop finished jobs from the active queue and archive them."""
        with self._lock:
            queue = self._queues.get(user_id)
            if not queue:
                return []
            finished = [job for job in queue if job.is_terminal]
            if not finished:
                return []
            self._queues[user_id] = [job for job in queue if not job.is_terminal]
            self._persist(user_id)

        self.audit.archive(user_id, finished)
        logger.debug(f"[{user_id}] Purged {len(finished)} finished job(s)")
        return finished

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def _recover(self, job: ScheduledJob) -> Optional[Tuple[JobStatus, JobStatus]]:
        """Reset a job persisted mid-stage. Returns (from, to) if changed."""
        previous = job.status
        if previous == JobStatus.GENERATING:
            job.status = JobStatus.PENDING
            job.file_path = ""
            job.source_url = None
            job.started_at = None
        elif previous == JobStatus.UPLOADING:
            job.status = JobStatus.GENERATED_READY if job.needs_generation else JobStatus.PENDING
            job.started_at = None
        else:
            return None
        return previous, job.status

    def load(self, record_recovery: bool = True) -> int:
        """Restore queues from the store.

        Jobs interrupted mid-stage are reset so they are retried, and each
        restored user gets a fresh batch covering the restored jobs.

        Args:
            record_recovery: Write the resets to the audit log. Offline
                tools that only inspect or clear a queue pass False.

        Returns:
            Number of jobs restored
        """
        try:
            restored = self.store.load()
        except PersistenceFailure as e:
            logger.error(f"Failed to restore queues: {e}")
            return 0

        total = 0
        recoveries = []
        with self._lock:
            for user_id, jobs in restored.items():
                queue = self._queues.setdefault(user_id, [])
                known = {job.job_id for job in queue}
                fresh = [job for job in jobs if job.job_id not in known]
                if not fresh:
                    continue

                batch_id = self.tracker.register(user_id, len(fresh))
                for job in fresh:
                    job.user_id = user_id
                    job.batch_id = batch_id
                    change = self._recover(job)
                    if change:
                        recoveries.append((user_id, job.job_id, change))

                queue.extend(fresh)
                self._persist(user_id)
                total += len(fresh)

        for user_id, job_id, (previous, current) in recoveries:
            logger.warning(
                f"[{user_id}] Job {job_id} was {previous.value} at shutdown; reset to {current.value}"
            )
            if record_recovery:
                self.audit.record_transition(
                    user_id, job_id, previous.value, current.value, error=RECOVERY_NOTE
                )

        if total:
            logger.info(f"Restored {total} job(s) for {len(restored)} user(s)")
        return total
