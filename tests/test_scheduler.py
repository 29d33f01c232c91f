"""Tests for the tick-based scheduler, driven by a fake clock and fake collaborators."""

import asyncio
import threading
import os
from datetime import timedelta

import pytest

from shorts_scheduler.queue import JobStatus, PostProcessingOptions, QueueManager
from shorts_scheduler.scheduler import Scheduler

from conftest import T0, FakeGenerator, FakePostProcessor, FakeUploader, make_job


def _statuses(manager, user_id="user-1"):
    return {job.job_id: job.status for job in manager.list_jobs(user_id)}


class TestLeadTime:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_job_ten_minutes_out_waits(self, manager, scheduler, generator, clock):
        """Publish at +10 min with 5 min lead: nothing happens yet."""
        job_id = manager.add("user-1", make_job(scheduled_time=T0 + timedelta(minutes=10)))

        counters = await scheduler.tick()

        assert generator.requests == []
        assert _statuses(manager)[job_id] == JobStatus.PENDING
        assert not any(counters.values())

    @pytest.mark.asyncio(loop_scope="function")
    async def test_job_two_minutes_out_generates_then_waits(
        self, manager, scheduler, generator, uploader, clock
    ):
        """Publish at +2 min: generated now, uploaded once publish time arrives."""
        job_id = manager.add("user-1", make_job(scheduled_time=T0 + timedelta(minutes=2)))

        counters = await scheduler.tick()

        assert counters["generated"] == 1
        job = manager.get("user-1", job_id)
        assert job.status == JobStatus.GENERATED_READY
        assert os.path.exists(job.file_path)
        assert job.source_url == f"https://cdn.test/{job_id}.mp4"
        assert uploader.uploads == []

        clock.advance(minutes=2)
        counters = await scheduler.tick()

        assert counters["uploaded"] == 1
        assert counters["purged"] == 1
        assert manager.list_jobs("user-1") == []
        path, metadata, credential_ref = uploader.uploads[0]
        assert path == job.file_path
        assert credential_ref == "refresh-token"
        assert not os.path.exists(job.file_path)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_full_lifecycle_across_ticks(self, manager, scheduler, generator, uploader, clock, completions):
        job_id = manager.add("user-1", make_job(scheduled_time=T0 + timedelta(minutes=10), title="Waves"))

        await scheduler.tick()
        assert _statuses(manager)[job_id] == JobStatus.PENDING

        clock.advance(minutes=6)
        await scheduler.tick()
        assert _statuses(manager)[job_id] == JobStatus.GENERATED_READY

        clock.advance(minutes=4)
        await scheduler.tick()
        assert len(uploader.uploads) == 1
        assert uploader.uploads[0][1].title == "Waves"

        assert len(completions) == 1
        _, ok, total, jobs = completions[0]
        assert (ok, total) == (1, 1)
        assert jobs[0].uploaded_url == "https://www.youtube.com/watch?v=vid1"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_overdue_job_generates_and_uploads_in_one_tick(self, manager, scheduler, uploader):
        manager.add("user-1", make_job(scheduled_time=T0 - timedelta(minutes=1)))

        counters = await scheduler.tick()

        assert counters["generated"] == 1
        assert counters["uploaded"] == 1
        assert len(uploader.uploads) == 1


class TestBatchOutcome:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_one_failure_in_three(self, manager, clock, tmp_path, completions):
        """Three jobs, one generation failure: callback fires once with (2, 3)."""
        generator = FakeGenerator(tmp_path / "videos", fail_prompts={"broken prompt"})
        uploader = FakeUploader()
        scheduler = Scheduler(manager, generator, uploader, clock=clock)

        manager.add_many(
            "user-1",
            [
                make_job(scheduled_time=T0, prompt="first"),
                make_job(scheduled_time=T0, prompt="broken prompt"),
                make_job(scheduled_time=T0, prompt="third"),
            ],
        )

        counters = await scheduler.tick()

        assert counters["uploaded"] == 2
        assert counters["generation_failed"] == 1
        assert len(completions) == 1
        user_id, ok, total, jobs = completions[0]
        assert (user_id, ok, total) == ("user-1", 2, 3)
        failed = [j for j in jobs if j.status == JobStatus.GENERATION_FAILED]
        assert failed[0].error_kind == "GenerationFailure"
        assert "broken prompt" in failed[0].error_message

        # Re-tick: nothing left, callback not repeated
        counters = await scheduler.tick()
        assert not any(counters.values())
        assert len(completions) == 1

    @pytest.mark.asyncio(loop_scope="function")
    async def test_clear_all_before_tick(self, manager, scheduler, generator, completions):
        manager.add_many("user-1", [make_job(scheduled_time=T0) for _ in range(5)])

        assert manager.clear_all("user-1") == 5
        await scheduler.tick()

        assert generator.requests == []
        assert completions == []


class TestFailures:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_missing_artifact_fails_job(self, manager, scheduler, uploader, clock):
        job_id = manager.add("user-1", make_job(scheduled_time=T0 + timedelta(minutes=3)))
        await scheduler.tick()
        os.remove(manager.get("user-1", job_id).file_path)

        clock.advance(minutes=3)
        counters = await scheduler.tick()

        assert counters["failed"] == 1
        assert uploader.uploads == []
        # Purged after failing; look at the batch summary instead
        summary = manager.tracker.last_summaries["user-1"]
        assert summary.jobs[0].status == JobStatus.FAILED
        assert summary.jobs[0].error_kind == "ArtifactMissing"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_upload_failure(self, manager, clock, tmp_path):
        uploader = FakeUploader(fail_titles={"Doomed"})
        scheduler = Scheduler(manager, FakeGenerator(tmp_path / "videos"), uploader, clock=clock)
        manager.add("user-1", make_job(scheduled_time=T0, title="Doomed"))

        counters = await scheduler.tick()

        assert counters["failed"] == 1
        job = manager.tracker.last_summaries["user-1"].jobs[0]
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "UploadFailure"
        assert "quotaExceeded" in job.error_message
        assert not os.path.exists(job.file_path)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_post_processing_failure_is_generation_failure(self, manager, clock, tmp_path):
        scheduler = Scheduler(
            manager,
            FakeGenerator(tmp_path / "videos"),
            FakeUploader(),
            FakePostProcessor(fail=True),
            clock=clock,
        )
        options = PostProcessingOptions(enabled=True, caption_text="hello")
        manager.add("user-1", make_job(scheduled_time=T0, post_processing=options))

        counters = await scheduler.tick()

        assert counters["generation_failed"] == 1
        job = manager.tracker.last_summaries["user-1"].jobs[0]
        assert job.error_kind == "PostProcessingFailure"
        assert list((tmp_path / "videos").iterdir()) == []

    @pytest.mark.asyncio(loop_scope="function")
    async def test_unexpected_error_marks_job_error(self, manager, scheduler, monkeypatch):
        job_id = manager.add("user-1", make_job(scheduled_time=T0))

        async def broken(job, now, counters):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(scheduler, "_process_job", broken)
        counters = await scheduler.tick()

        assert counters["errors"] == 1
        job = manager.tracker.last_summaries["user-1"].jobs[0]
        assert job.job_id == job_id
        assert job.status == JobStatus.ERROR
        assert job.error_kind == "RuntimeError"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_one_user_failure_does_not_stop_others(self, manager, clock, tmp_path):
        generator = FakeGenerator(tmp_path / "videos", fail_prompts={"bad"})
        uploader = FakeUploader()
        scheduler = Scheduler(manager, generator, uploader, clock=clock)
        manager.add("user-1", make_job(scheduled_time=T0, prompt="bad"))
        manager.add("user-2", make_job(scheduled_time=T0, prompt="good"))

        counters = await scheduler.tick()

        assert counters["generation_failed"] == 1
        assert counters["uploaded"] == 1


class TestPresuppliedAndPostProcessing:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_presupplied_file_skips_generation(self, manager, scheduler, generator, uploader, tmp_path):
        video = tmp_path / "ready.mp4"
        video.write_bytes(b"video")
        manager.add(
            "user-1",
            make_job(scheduled_time=T0, needs_generation=False, prompt=None, file_path=str(video)),
        )

        counters = await scheduler.tick()

        assert counters["uploaded"] == 1
        assert generator.requests == []
        assert uploader.uploads[0][0] == str(video)
        assert not video.exists()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_presupplied_file_waits_for_publish_time(self, manager, scheduler, uploader, tmp_path):
        video = tmp_path / "ready.mp4"
        video.write_bytes(b"video")
        manager.add(
            "user-1",
            make_job(scheduled_time=T0 + timedelta(minutes=1), needs_generation=False, file_path=str(video)),
        )

        await scheduler.tick()

        assert uploader.uploads == []
        assert video.exists()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_post_processed_file_is_uploaded(self, manager, scheduler, uploader):
        options = PostProcessingOptions(enabled=True, caption_text="Subscribe!")
        manager.add("user-1", make_job(scheduled_time=T0 + timedelta(minutes=1), post_processing=options))

        await scheduler.tick()
        job = manager.list_jobs("user-1")[0]

        assert job.status == JobStatus.GENERATED_READY
        assert job.file_path.endswith("_final.mp4")
        assert scheduler.post_processor.calls[0][1].caption_text == "Subscribe!"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_keep_artifact_when_configured(self, manager, clock, tmp_path):
        scheduler = Scheduler(
            manager,
            FakeGenerator(tmp_path / "videos"),
            FakeUploader(),
            clock=clock,
            delete_after_upload=False,
        )
        manager.add("user-1", make_job(scheduled_time=T0))

        await scheduler.tick()

        job = manager.tracker.last_summaries["user-1"].jobs[0]
        assert os.path.exists(job.file_path)


class TestClaims:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_in_flight_job_skipped(self, manager, scheduler, generator):
        job_id = manager.add("user-1", make_job(scheduled_time=T0))
        scheduler._in_flight.add(job_id)

        await scheduler.tick()

        assert generator.requests == []
        assert _statuses(manager)[job_id] == JobStatus.PENDING

    @pytest.mark.asyncio(loop_scope="function")
    async def test_claimed_elsewhere_is_not_regenerated(self, manager, scheduler, generator):
        job_id = manager.add("user-1", make_job(scheduled_time=T0))
        manager.update_status("user-1", job_id, JobStatus.GENERATING)

        await scheduler.tick()

        assert generator.requests == []

    @pytest.mark.asyncio(loop_scope="function")
    async def test_overlapping_ticks_generate_once(self, manager, scheduler, generator, uploader):
        manager.add("user-1", make_job(scheduled_time=T0))

        await asyncio.gather(scheduler.tick(), scheduler.tick())

        assert len(generator.requests) == 1
        assert len(uploader.uploads) == 1

    @pytest.mark.asyncio(loop_scope="function")
    async def test_job_cleared_during_generation(self, manager, clock, tmp_path, completions):
        class ClearingGenerator(FakeGenerator):
            async def generate(self, request):
                video = await super().generate(request)
                manager.clear_all(request.user_id)
                return video

        generator = ClearingGenerator(tmp_path / "videos")
        scheduler = Scheduler(manager, generator, FakeUploader(), clock=clock)
        manager.add("user-1", make_job(scheduled_time=T0))

        counters = await scheduler.tick()

        assert counters["generated"] == 0
        assert list((tmp_path / "videos").iterdir()) == []
        assert completions == []


class TestLifecycle:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_start_and_stop(self, manager, scheduler):
        manager.add("user-1", make_job(scheduled_time=T0))

        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop(timeout=1)

        assert not scheduler.running
        assert scheduler.ticks >= 1
        assert manager.list_jobs("user-1") == []

    @pytest.mark.asyncio(loop_scope="function")
    async def test_stop_without_start(self, scheduler):
        await scheduler.stop(timeout=1)
        assert not scheduler.running


class ThreadRecordingAudit:
    """Audit log that notes which thread each write ran on."""

    def __init__(self):
        self.threads = []

    def record_transition(self, user_id, job_id, from_state, to_state, error=None):
        self.threads.append(threading.get_ident())

    def archive(self, user_id, jobs):
        self.threads.append(threading.get_ident())


class TestBlockingWrites:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_audit_writes_run_off_the_event_loop(self, store, tracker, clock, generator, uploader):
        audit = ThreadRecordingAudit()
        manager = QueueManager(store, tracker, audit=audit, clock=clock)
        manager.add("user-1", make_job(scheduled_time=T0))
        audit.threads.clear()
        scheduler = Scheduler(manager, generator, uploader, clock=clock)

        counters = await scheduler.tick()

        assert counters["uploaded"] == 1
        # generating, generated_ready, uploading, completed, archive
        assert len(audit.threads) == 5
        assert threading.get_ident() not in audit.threads
