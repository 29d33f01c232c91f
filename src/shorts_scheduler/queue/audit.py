"""SQLite implementation of AuditLog.

This module keeps an append-only record of job activity using:
- sqlite-utils for schema management and inserts
- WAL mode so readers (CLI history) never block the scheduler
- Exponential backoff retry for database lock contention

The audit database is a side record. The per-user JSON snapshots remain the
source of truth for the live queue.
"""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import List, Optional

from sqlite_utils import Database

from .backends import AuditLog
from .models import ScheduledJob, StateTransition, utcnow

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);

-- Final snapshots of purged jobs
CREATE TABLE IF NOT EXISTS job_history (
    job_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,
    scheduled_time TEXT NOT NULL,
    completed_at TEXT,
    uploaded_url TEXT,
    error_kind TEXT,
    archived_at TEXT NOT NULL,
    payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_history_user ON job_history(user_id, scheduled_time);
"""


class SQLiteAuditLog(AuditLog):
    """SQLite-backed audit trail.

    Features:
    - One connection shared across threads, serialized by a lock
    - Best-effort writes: failures are logged, never raised
    - Full job JSON kept alongside indexed summary columns
    """

    def __init__(self, db_path: str, max_retries: int = 3):
        """Open (and create if needed) the audit database.

        Args:
            db_path: Path to SQLite database file
            max_retries: Attempts per write when the database is locked
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_retries = max_retries

        # Scheduler stages write from worker threads
        self.db = Database(sqlite3.connect(str(self.db_path), check_same_thread=False))
        self._lock = threading.Lock()

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")
        self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    def _write(self, action: str, fn) -> None:
        """Run a write under the lock, retrying on lock contention.

        Backoff sleeps block the calling thread (up to 300ms with the
        default retries), so async callers run writes in a worker thread.
        """
        for attempt in range(self.max_retries):
            try:
                with self._lock:
                    with self.db.conn:
                        fn()
                return
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.max_retries - 1:
                    # Exponential backoff: 100ms, 200ms, 400ms
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                logger.error(f"Audit {action} failed: {e}")
                return
            except sqlite3.Error as e:
                logger.error(f"Audit {action} failed: {e}")
                return

    def record_transition(
        self,
        user_id: str,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        error: Optional[str] = None,
    ) -> None:
        row = {
            "job_id": job_id,
            "user_id": user_id,
            "from_state": from_state,
            "to_state": to_state,
            "timestamp": utcnow().isoformat(),
            "error_snippet": error[:200] if error else None,
        }
        self._write("transition", lambda: self.db["state_transitions"].insert(row))

    def archive(self, user_id: str, jobs: List[ScheduledJob]) -> None:
        if not jobs:
            return
        archived_at = utcnow().isoformat()
        rows = []
        for job in jobs:
            rows.append(
                {
                    "job_id": job.job_id,
                    "user_id": user_id,
                    "status": job.status.value,
                    "scheduled_time": job.scheduled_time.isoformat(),
                    "completed_at": job.completed_at.isoformat() if job.completed_at else None,
                    "uploaded_url": job.uploaded_url,
                    "error_kind": job.error_kind,
                    "archived_at": archived_at,
                    "payload": json.dumps(job.model_dump(mode="json")),
                }
            )
        self._write(
            "archive", lambda: self.db["job_history"].upsert_all(rows, pk="job_id")
        )

    def transitions(self, job_id: str) -> List[StateTransition]:
        with self._lock:
            rows = list(
                self.db["state_transitions"].rows_where(
                    "job_id = ?", [job_id], order_by="id"
                )
            )
        return [StateTransition(**row) for row in rows]

    def history(self, user_id: str, status: Optional[str] = None) -> List[ScheduledJob]:
        """Query archived jobs for a user.

        Args:
            user_id: Owning user
            status: Optional terminal status to filter by

        Returns:
            Archived jobs ordered by scheduled time

        Complexity: O(log n) via user index
        """
        where = "user_id = ?"
        params = [user_id]
        if status:
            where += " AND status = ?"
            params.append(status)

        with self._lock:
            rows = list(
                self.db["job_history"].rows_where(where, params, order_by="scheduled_time")
            )
        return [ScheduledJob.model_validate(json.loads(row["payload"])) for row in rows]

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()
