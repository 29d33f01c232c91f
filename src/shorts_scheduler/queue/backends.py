from __future__ import annotations

"""Abstract base classes for queue persistence and the audit trail.

This module defines the interfaces the queue manager depends on. The
file-backed store is the production implementation; the in-memory store
is swapped in for tests. Both keep the queue manager independent of any
particular storage format.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from .models import ScheduledJob, StateTransition


class QueueStore(ABC):
    """Durable per-user job list.

    Implementations must provide:
    - One independent record per user
    - Full overwrite on save (no partial updates)
    - Load that skips terminal jobs and unreadable records
    """

    @abstractmethod
    def load(self) -> Dict[str, List["ScheduledJob"]]:
        """Load every user's persisted queue.

        Returns:
            Mapping of user_id to jobs in insertion order

        Implementation notes:
        - Must filter to non-terminal statuses (finished jobs are not resumed)
        - A failed read for one user is logged and must not block the others
        - Users whose filtered queue is empty may be omitted
        """
        pass

    @abstractmethod
    def save(self, user_id: str, jobs: List["ScheduledJob"]) -> None:
        """Overwrite a user's durable snapshot.

        Args:
            user_id: Owning user
            jobs: Complete job list for the user (may be empty)

        Raises:
            PersistenceFailure: If the snapshot could not be written

        Implementation notes:
        - Should be atomic from a reader's point of view (write + rename)
        - Callers keep their in-memory queue authoritative on failure
        """
        pass


class AuditLog(ABC):
    """Append-only trail of job state changes and finished jobs.

    Audit writes are best-effort: implementations log their own failures
    and never raise into the scheduling engine.
    """

    @abstractmethod
    def record_transition(
        self,
        user_id: str,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        error: Optional[str] = None,
    ) -> None:
        """Append one state transition.

        Args:
            user_id: Owning user
            job_id: Job identifier
            from_state: Previous state (None on creation)
            to_state: New state
            error: Error message if applicable (truncated to 200 chars)
        """
        pass

    @abstractmethod
    def archive(self, user_id: str, jobs: List["ScheduledJob"]) -> None:
        """Persist final snapshots of jobs leaving the active queue.

        Args:
            user_id: Owning user
            jobs: Terminal jobs being purged
        """
        pass

    @abstractmethod
    def transitions(self, job_id: str) -> List["StateTransition"]:
        """Return the transitions recorded for a job, oldest first."""
        pass

    @abstractmethod
    def history(self, user_id: str, status: Optional[str] = None) -> List["ScheduledJob"]:
        """Return archived jobs for a user, optionally filtered by status."""
        pass


class NullAuditLog(AuditLog):
    """Audit log that records nothing."""

    def record_transition(self, user_id, job_id, from_state, to_state, error=None) -> None:
        pass

    def archive(self, user_id, jobs) -> None:
        pass

    def transitions(self, job_id):
        return []

    def history(self, user_id, status=None):
        return []
