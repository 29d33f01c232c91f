"""Per-user batch completion tracking.

A batch is every job added to a user's queue between the first add after
the counters were last reset and the moment all of them have reached a
terminal state. When that happens the tracker hands a summary to the
completion callback registered at construction.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .models import BatchInfo, BatchSummary, ScheduledJob, utcnow

logger = logging.getLogger(__name__)

BatchCallback = Callable[[str, int, int, List[ScheduledJob]], None]


class BatchTracker:
    """Thread-safe batch counters keyed by user id.

    The callback receives ``(user_id, success_count, total_count, jobs)``
    and is invoked outside the tracker lock. Exceptions raised by the
    callback are logged and swallowed.
    """

    def __init__(
        self,
        on_complete: Optional[BatchCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._on_complete = on_complete
        self._clock = clock or utcnow
        self._batches: Dict[str, BatchInfo] = {}
        self._lock = threading.Lock()
        self.last_summaries: Dict[str, BatchSummary] = {}

    def register(self, user_id: str, count: int = 1) -> str:
        """Add ``count`` jobs to the user's current batch, opening one if needed.

        Returns:
            The batch id the jobs were assigned to
        """
        with self._lock:
            batch = self._batches.get(user_id)
            if batch is None:
                batch = BatchInfo(user_id=user_id, started_at=self._clock())
                self._batches[user_id] = batch
            batch.total += count
            return batch.batch_id

    def record_outcome(
        self,
        user_id: str,
        success: bool,
        job: Optional[ScheduledJob] = None,
        batch_id: Optional[str] = None,
    ) -> Optional[BatchSummary]:
        """Count one terminal job and fire the callback when the batch is done.

        Args:
            user_id: Owning user
            success: True if the job was published
            job: Terminal job snapshot to include in the summary
            batch_id: Batch the job belonged to; outcomes for any other
                batch (e.g. one removed by a clear) are ignored

        Returns:
            BatchSummary if this outcome completed the batch, else None
        """
        with self._lock:
            batch = self._batches.get(user_id)
            if batch is None:
                return None
            if batch_id is not None and batch_id != batch.batch_id:
                logger.debug(f"[{user_id}] Ignoring outcome for stale batch {batch_id}")
                return None

            batch.completed += 1
            if success:
                batch.succeeded += 1
            if job is not None:
                batch.jobs.append(job)

            if batch.total <= 0 or batch.completed < batch.total:
                return None

            completed_at = self._clock()
            summary = BatchSummary(
                batch_id=batch.batch_id,
                user_id=user_id,
                success_count=batch.succeeded,
                total_count=batch.total,
                started_at=batch.started_at,
                completed_at=completed_at,
                duration_s=max(0.0, (completed_at - batch.started_at).total_seconds()),
                jobs=list(batch.jobs),
            )
            del self._batches[user_id]
            self.last_summaries[user_id] = summary

        logger.info(
            f"[{user_id}] Batch complete: {summary.success_count}/{summary.total_count} "
            f"succeeded in {summary.duration_s / 60:.1f} min"
        )
        self._notify(summary)
        return summary

    def _notify(self, summary: BatchSummary) -> None:
        if self._on_complete is None:
            return
        try:
            self._on_complete(
                summary.user_id, summary.success_count, summary.total_count, summary.jobs
            )
        except Exception as e:
            logger.error(f"[{summary.user_id}] Batch completion callback failed: {e}")

    def reset(self, user_id: str) -> None:
        """Drop the user's counters (manual cancellation)."""
        with self._lock:
            self._batches.pop(user_id, None)

    def get(self, user_id: str) -> Optional[BatchInfo]:
        """Return a copy of the user's in-progress batch, if any."""
        with self._lock:
            batch = self._batches.get(user_id)
            return batch.model_copy(deep=True) if batch else None
