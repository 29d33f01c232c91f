"""Wires configuration into the queue, collaborators and scheduler."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import psutil

from .models import AppConfig
from .queue import (
    AuditLog,
    BatchTracker,
    JsonQueueStore,
    QueueManager,
    ScheduledJob,
    SQLiteAuditLog,
)
from .scheduler import Scheduler
from .stages.postprocess import FfmpegPostProcessor
from .stages.replicate import ReplicateGenerator
from .stages.youtube import YouTubeUploader

logger = logging.getLogger(__name__)

SERVER_PID_FILE = "server.pid"


def log_batch_completion(
    user_id: str, success_count: int, total_count: int, jobs: List[ScheduledJob]
) -> None:
    """Default batch completion listener: one summary line plus one per job."""
    logger.info(f"[{user_id}] All scheduled uploads finished: {success_count}/{total_count} succeeded")
    for job in jobs:
        outcome = job.uploaded_url or job.error_message or ""
        logger.info(f"[{user_id}]   {job.file_name}: {job.status.value} {outcome}".rstrip())


@dataclass
class Services:
    """Long-lived objects shared by the API and the CLI."""

    config: AppConfig
    manager: QueueManager
    scheduler: Optional[Scheduler] = None
    audit: Optional[AuditLog] = None

    @property
    def tracker(self) -> BatchTracker:
        return self.manager.tracker

    def close(self) -> None:
        if isinstance(self.audit, SQLiteAuditLog):
            self.audit.close()


def build_queue(config: AppConfig) -> Services:
    """Store, audit log, tracker and manager only (no collaborators)."""
    tracker = BatchTracker(on_complete=log_batch_completion)
    audit = SQLiteAuditLog(config.storage.audit_db)
    manager = QueueManager(JsonQueueStore(config.storage.queue_dir), tracker, audit)
    return Services(config=config, manager=manager, audit=audit)


def build_services(config: AppConfig) -> Services:
    """Full production wiring: queue plus Replicate, ffmpeg and YouTube."""
    services = build_queue(config)
    Path(config.storage.work_dir).mkdir(parents=True, exist_ok=True)

    services.scheduler = Scheduler(
        services.manager,
        ReplicateGenerator.from_config(config.generation, config.storage.work_dir),
        YouTubeUploader.from_config(config.upload),
        FfmpegPostProcessor(config.post_processing),
        tick_interval_s=config.scheduler.tick_interval_s,
        generation_lead_time=config.scheduler.generation_lead_time,
        max_concurrent_users=config.scheduler.max_concurrent_users,
        media_concurrency=config.scheduler.media_concurrency,
        delete_after_upload=config.upload.delete_after_upload,
    )
    return services


def claim_queue_dir(queue_dir: str) -> Path:
    """Mark ``queue_dir`` as owned by this (server) process."""
    pid_file = Path(queue_dir) / SERVER_PID_FILE
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))
    return pid_file


def release_queue_dir(queue_dir: str) -> None:
    pid_file = Path(queue_dir) / SERVER_PID_FILE
    try:
        if pid_file.read_text().strip() == str(os.getpid()):
            pid_file.unlink()
    except (OSError, ValueError) as e:
        logger.debug(f"Could not release {pid_file}: {e}")


def queue_dir_owner(queue_dir: str) -> Optional[int]:
    """PID of another live process that owns ``queue_dir``, or None.

    A pid file left behind by a crashed server is ignored.
    """
    pid_file = Path(queue_dir) / SERVER_PID_FILE
    try:
        pid = int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return None
    if pid == os.getpid() or not psutil.pid_exists(pid):
        return None
    return pid
