"""File-backed and in-memory implementations of QueueStore.

The file store keeps one JSON document per user:

    {"schema_version": 1, "user_id": "...", "jobs": [ {...}, ... ]}

Older snapshots written as a bare job list are still accepted; the user id
is then taken from the file name.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List

from pydantic import ValidationError

from ..errors import PersistenceFailure
from .backends import QueueStore
from .models import ScheduledJob

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SLUG_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def user_file_name(user_id: str) -> str:
    """Filesystem-safe, collision-free file name for a user id."""
    slug = _SLUG_RE.sub("_", user_id).strip("._")[:40] or "user"
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:10]
    return f"{slug}-{digest}.json"


def _active_jobs(raw_jobs: List[Dict[str, Any]], source: str) -> List[ScheduledJob]:
    jobs = []
    for raw in raw_jobs:
        try:
            job = ScheduledJob.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Skipping unreadable job in {source}: {e.error_count()} error(s)")
            continue
        if not job.is_terminal:
            jobs.append(job)
    return jobs


class JsonQueueStore(QueueStore):
    """One JSON file per user inside ``directory``.

    Features:
    - Atomic overwrite via temp file + os.replace
    - Terminal jobs dropped on load
    - Per-file error isolation on load
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, user_id: str) -> Path:
        return self.directory / user_file_name(user_id)

    def load(self) -> Dict[str, List[ScheduledJob]]:
        queues: Dict[str, List[ScheduledJob]] = {}

        try:
            files = sorted(self.directory.glob("*.json"))
        except OSError as e:
            logger.error(f"Queue directory unreadable ({self.directory}): {e}")
            return queues

        for path in files:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    payload = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load queue file {path.name}: {e}")
                continue

            if isinstance(payload, list):
                user_id = path.stem
                raw_jobs = payload
            elif isinstance(payload, dict):
                user_id = payload.get("user_id") or path.stem
                raw_jobs = payload.get("jobs") or []
            else:
                logger.error(f"Unexpected queue file layout in {path.name}")
                continue

            jobs = _active_jobs(raw_jobs, path.name)
            if jobs:
                queues.setdefault(user_id, []).extend(jobs)
                logger.info(f"[{user_id}] Restored {len(jobs)} scheduled job(s)")

        return queues

    def save(self, user_id: str, jobs: List[ScheduledJob]) -> None:
        payload = {
            "schema_version": SCHEMA_VERSION,
            "user_id": user_id,
            "jobs": [job.model_dump(mode="json") for job in jobs],
        }
        target = self.path_for(user_id)

        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{target.stem}.", suffix=".tmp", dir=str(self.directory)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, target)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceFailure(f"Failed to save queue for {user_id}: {e}") from e


class InMemoryQueueStore(QueueStore):
    """Store that keeps serialized snapshots in a dict.

    Snapshots are stored as JSON-mode dumps so loaded jobs never share
    state with the manager's copies.
    """

    def __init__(self):
        self.snapshots: Dict[str, List[Dict[str, Any]]] = {}
        self.save_count = 0

    def load(self) -> Dict[str, List[ScheduledJob]]:
        queues = {}
        for user_id, raw_jobs in self.snapshots.items():
            jobs = _active_jobs(raw_jobs, f"memory:{user_id}")
            if jobs:
                queues[user_id] = jobs
        return queues

    def save(self, user_id: str, jobs: List[ScheduledJob]) -> None:
        self.snapshots[user_id] = [job.model_dump(mode="json") for job in jobs]
        self.save_count += 1
