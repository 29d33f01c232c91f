import logging
import os
from unittest.mock import patch

import pytest

from shorts_scheduler.models import AppConfig
from shorts_scheduler.queue import JobStatus, SQLiteAuditLog
from shorts_scheduler.services import (
    SERVER_PID_FILE,
    build_queue,
    build_services,
    claim_queue_dir,
    log_batch_completion,
    queue_dir_owner,
    release_queue_dir,
)
from shorts_scheduler.stages.replicate import ReplicateGenerator
from shorts_scheduler.stages.youtube import YouTubeUploader

from conftest import make_job


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        storage={
            "queue_dir": str(tmp_path / "queues"),
            "audit_db": str(tmp_path / "audit.db"),
            "work_dir": str(tmp_path / "videos"),
        }
    )


def test_build_queue_persists_jobs(config):
    services = build_queue(config)
    try:
        job_id = services.manager.add("user-1", make_job())
        assert isinstance(services.audit, SQLiteAuditLog)
        assert services.scheduler is None
        assert services.tracker is services.manager.tracker
    finally:
        services.close()

    reloaded = build_queue(config)
    try:
        assert reloaded.manager.load() == 1
        assert reloaded.manager.get("user-1", job_id).status == JobStatus.PENDING
    finally:
        reloaded.close()


def test_build_services_wires_collaborators(config, tmp_path, monkeypatch):
    monkeypatch.setenv("REPLICATE_API_TOKEN", "r8_token")
    monkeypatch.setenv("YOUTUBE_CLIENT_ID", "client-id")
    monkeypatch.setenv("YOUTUBE_CLIENT_SECRET", "client-secret")

    services = build_services(config)
    try:
        assert (tmp_path / "videos").is_dir()
        scheduler = services.scheduler
        assert scheduler.manager is services.manager
        assert isinstance(scheduler.generator, ReplicateGenerator)
        assert scheduler.generator.api_token == "r8_token"
        assert isinstance(scheduler.uploader, YouTubeUploader)
        assert scheduler.uploader.client_id == "client-id"
    finally:
        services.close()


def test_log_batch_completion(caplog):
    jobs = [
        make_job(status=JobStatus.COMPLETED, uploaded_url="https://www.youtube.com/watch?v=abc"),
        make_job(status=JobStatus.FAILED, error_message="quotaExceeded"),
    ]

    with caplog.at_level(logging.INFO, logger="shorts_scheduler.services"):
        log_batch_completion("user-1", 1, 2, jobs)

    messages = [r.getMessage() for r in caplog.records]
    assert messages[0] == "[user-1] All scheduled uploads finished: 1/2 succeeded"
    assert "watch?v=abc" in messages[1]
    assert "failed quotaExceeded" in messages[2]


class TestQueueDirOwnership:
    def test_claim_and_release(self, tmp_path):
        queue_dir = tmp_path / "queues"
        pid_file = claim_queue_dir(str(queue_dir))

        assert pid_file == queue_dir / SERVER_PID_FILE
        assert pid_file.read_text() == str(os.getpid())
        release_queue_dir(str(queue_dir))
        assert not pid_file.exists()

    def test_own_pid_is_not_a_foreign_owner(self, tmp_path):
        claim_queue_dir(str(tmp_path))
        assert queue_dir_owner(str(tmp_path)) is None

    def test_live_foreign_owner(self, tmp_path):
        (tmp_path / SERVER_PID_FILE).write_text("4242")
        with patch("shorts_scheduler.services.psutil.pid_exists", return_value=True):
            assert queue_dir_owner(str(tmp_path)) == 4242

    def test_stale_owner_ignored(self, tmp_path):
        (tmp_path / SERVER_PID_FILE).write_text("4242")
        with patch("shorts_scheduler.services.psutil.pid_exists", return_value=False):
            assert queue_dir_owner(str(tmp_path)) is None

    def test_missing_or_garbled_pid_file(self, tmp_path):
        assert queue_dir_owner(str(tmp_path)) is None
        (tmp_path / SERVER_PID_FILE).write_text("not-a-pid")
        assert queue_dir_owner(str(tmp_path)) is None

    def test_release_keeps_other_servers_file(self, tmp_path):
        pid_file = tmp_path / SERVER_PID_FILE
        pid_file.write_text("4242")
        release_queue_dir(str(tmp_path))
        assert pid_file.exists()
