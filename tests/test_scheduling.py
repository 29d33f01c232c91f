"""Tests for bulk schedule registration and publish-time spreading."""

import random
from datetime import timedelta

import pytest
from pydantic import ValidationError

from shorts_scheduler.queue import JobStatus
from shorts_scheduler.scheduling import (
    GenerationSpec,
    ScheduleSettings,
    UploadOptions,
    assign_publish_metadata,
    preview_schedule,
    register_generation_uploads,
    register_uploads,
    render_title,
    spread_upload_times,
)

from conftest import T0


class TestSpreadUploadTimes:
    def test_one_time_per_segment(self):
        times = spread_upload_times(T0, 4, hours=2, min_interval_minutes=7, rng=random.Random(1))

        assert len(times) == 4
        for i, t in enumerate(times):
            offset = (t - T0).total_seconds() / 60
            assert 30 * i <= offset <= 30 * (i + 1)

    def test_ascending(self):
        times = spread_upload_times(T0, 10, hours=3, min_interval_minutes=5, rng=random.Random(7))
        assert times == sorted(times)

    def test_min_interval_pushes_early_picks(self):
        class AlwaysStart(random.Random):
            def random(self):
                return 0.0

        times = spread_upload_times(T0, 3, hours=1, min_interval_minutes=7, rng=AlwaysStart())

        offsets = [(t - T0).total_seconds() / 60 for t in times]
        assert offsets == pytest.approx([0, 20 + 7, 40 + 7])

    def test_no_push_when_window_too_small(self):
        class AlwaysStart(random.Random):
            def random(self):
                return 0.0

        # 3 items * 30 min spacing does not fit in one hour
        times = spread_upload_times(T0, 3, hours=1, min_interval_minutes=30, rng=AlwaysStart())
        offsets = [(t - T0).total_seconds() / 60 for t in times]
        assert offsets == pytest.approx([0, 20, 40])

    def test_never_past_window_end(self):
        times = spread_upload_times(T0, 5, hours=0.5, min_interval_minutes=5, rng=random.Random(3))
        assert max(times) <= T0 + timedelta(minutes=30)

    def test_empty(self):
        assert spread_upload_times(T0, 0, hours=1, min_interval_minutes=7) == []


class TestPreviewSchedule:
    def test_evenly_spaced_from_five_minutes_out(self):
        settings = ScheduleSettings(hours=2, min_interval_minutes=7, randomize_order=False)
        preview = preview_schedule(5, settings, now=T0)

        assert [p.scheduled_time for p in preview] == [
            T0 + timedelta(minutes=5 + 30 * i) for i in range(5)
        ]
        assert [p.index for p in preview] == [1, 2, 3, 4, 5]

    def test_interval_floor(self):
        settings = ScheduleSettings(hours=0.5, min_interval_minutes=20, randomize_order=False)
        preview = preview_schedule(3, settings, now=T0)

        gaps = {
            (b.scheduled_time - a.scheduled_time) for a, b in zip(preview, preview[1:])
        }
        assert gaps == {timedelta(minutes=20)}

    def test_randomized_order_still_sorted_by_time(self):
        settings = ScheduleSettings(hours=1, randomize_order=True)
        preview = preview_schedule(6, settings, now=T0, rng=random.Random(2))

        times = [p.scheduled_time for p in preview]
        assert times == sorted(times)
        assert sorted(p.index for p in preview) == [1, 2, 3, 4, 5, 6]

    def test_explicit_start_time(self):
        start = T0 + timedelta(days=1)
        settings = ScheduleSettings(hours=1, randomize_order=False, start_time=start)
        assert preview_schedule(1, settings, now=T0)[0].scheduled_time == start


class TestPublishMetadata:
    def test_number_placeholder(self):
        assert render_title("Cat clip #NUMBER", 2, 5) == "Cat clip #3"

    def test_single_item_drops_placeholder(self):
        assert render_title("Cat clip #NUMBER", 0, 1) == "Cat clip"

    def test_template_values(self):
        options = UploadOptions(title_template="Clip #NUMBER", description="desc", tags="a, b")
        metadata = assign_publish_metadata(options, 2)

        assert [m.title for m in metadata] == ["Clip #1", "Clip #2"]
        assert metadata[0].tags == ["a", "b"]
        assert metadata[1].description == "desc"

    def test_random_pools_cycle(self):
        options = UploadOptions(
            title_template="fallback",
            use_random_info=True,
            random_titles=["A", "B"],
            random_tags=["x,y"],
        )
        metadata = assign_publish_metadata(options, 4, random.Random(0))

        titles = [m.title for m in metadata]
        assert sorted(titles) == ["A", "A", "B", "B"]
        assert titles[0] == titles[2]
        assert all(m.tags == ["x", "y"] for m in metadata)

    def test_empty_pool_falls_back_to_template(self):
        options = UploadOptions(title_template="T #NUMBER", use_random_info=True, random_descriptions=["d"])
        metadata = assign_publish_metadata(options, 2)
        assert [m.title for m in metadata] == ["T #1", "T #2"]
        assert metadata[1].description == "d"


class TestRegistration:
    def test_register_uploads(self, manager, tmp_path):
        paths = [str(tmp_path / f"clip{i}.mp4") for i in range(3)]
        settings = ScheduleSettings(hours=1, randomize_order=False)
        options = UploadOptions(title_template="Clip #NUMBER", privacy="unlisted")

        jobs = register_uploads(manager, "user-1", "token", paths, options, settings, now=T0)

        assert [j.file_path for j in jobs] == paths
        assert [j.file_name for j in jobs] == ["clip0.mp4", "clip1.mp4", "clip2.mp4"]
        assert [j.title for j in jobs] == ["Clip #1", "Clip #2", "Clip #3"]
        assert all(not j.needs_generation and j.privacy == "unlisted" for j in jobs)
        assert manager.count_active("user-1") == 3
        assert manager.tracker.get("user-1").total == 3
        batch_id = manager.tracker.get("user-1").batch_id
        assert all(j.batch_id == batch_id for j in jobs)
        assert jobs[0] == manager.get("user-1", jobs[0].job_id)

        window_start = T0 + timedelta(minutes=5)
        assert all(window_start <= j.scheduled_time <= window_start + timedelta(hours=1) for j in jobs)

    def test_register_generation_uploads(self, manager):
        videos = [GenerationSpec(prompt="waves"), GenerationSpec(prompt="sunset", duration=10)]
        settings = ScheduleSettings(hours=2, randomize_order=False)

        jobs = register_generation_uploads(
            manager, "user-1", "token", videos, UploadOptions(), settings, now=T0
        )

        assert [j.prompt for j in jobs] == ["waves", "sunset"]
        assert jobs[1].duration == 10
        assert all(j.needs_generation and j.status == JobStatus.PENDING for j in jobs)
        assert [j.job_id for j in manager.eligible_jobs("user-1")] == [j.job_id for j in jobs]
        assert all(j.batch_id is not None for j in jobs)

    def test_empty_path_rejects_whole_schedule(self, manager):
        settings = ScheduleSettings(hours=1, randomize_order=False)

        with pytest.raises(ValidationError, match="file_path is required"):
            register_uploads(manager, "user-1", "token", ["/v/a.mp4", ""], UploadOptions(), settings, now=T0)

        assert manager.list_jobs("user-1") == []

    def test_randomized_order_keeps_every_item(self, manager):
        videos = [GenerationSpec(prompt=f"p{i}") for i in range(6)]
        settings = ScheduleSettings(hours=3, randomize_order=True)

        jobs = register_generation_uploads(
            manager, "user-1", "token", videos, UploadOptions(), settings, now=T0, rng=random.Random(5)
        )

        assert sorted(j.prompt for j in jobs) == [f"p{i}" for i in range(6)]
