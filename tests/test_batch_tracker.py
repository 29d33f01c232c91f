"""Tests for batch completion tracking."""

import pytest

from shorts_scheduler.queue import BatchTracker, JobStatus

from conftest import FakeClock, make_job


@pytest.fixture
def calls():
    return []


@pytest.fixture
def batches(calls):
    clock = FakeClock()
    tracker = BatchTracker(
        on_complete=lambda user_id, ok, total, jobs: calls.append((user_id, ok, total, len(jobs))),
        clock=clock,
    )
    return tracker, clock


def test_register_opens_and_extends_batch(batches):
    tracker, _ = batches
    first = tracker.register("user-1", 2)
    second = tracker.register("user-1", 1)

    assert first == second
    assert tracker.get("user-1").total == 3


def test_callback_fires_once_when_all_terminal(batches, calls):
    """Three jobs, one failure: callback gets (2, 3) exactly once."""
    tracker, clock = batches
    batch_id = tracker.register("user-1", 3)

    assert tracker.record_outcome("user-1", True, batch_id=batch_id) is None
    assert tracker.record_outcome("user-1", False, batch_id=batch_id) is None
    clock.advance(minutes=30)
    summary = tracker.record_outcome("user-1", True, batch_id=batch_id)

    assert calls == [("user-1", 2, 3, 0)]
    assert summary.success_count == 2
    assert summary.total_count == 3
    assert summary.duration_s == pytest.approx(1800)
    assert tracker.get("user-1") is None
    assert tracker.last_summaries["user-1"] == summary


def test_summary_includes_job_snapshots(batches, calls):
    tracker, _ = batches
    batch_id = tracker.register("user-1", 1)
    job = make_job(status=JobStatus.FAILED, error_message="quota")

    summary = tracker.record_outcome("user-1", False, job=job, batch_id=batch_id)

    assert summary.jobs[0].error_message == "quota"
    assert calls == [("user-1", 0, 1, 1)]


def test_stale_batch_outcome_ignored(batches, calls):
    tracker, _ = batches
    old = tracker.register("user-1", 1)
    tracker.reset("user-1")
    new = tracker.register("user-1", 1)

    assert tracker.record_outcome("user-1", True, batch_id=old) is None
    assert tracker.get("user-1").completed == 0
    assert tracker.record_outcome("user-1", True, batch_id=new) is not None
    assert calls == [("user-1", 1, 1, 0)]


def test_outcome_without_batch_is_ignored(batches, calls):
    tracker, _ = batches
    assert tracker.record_outcome("nobody", True) is None
    assert calls == []


def test_new_batch_after_completion(batches, calls):
    tracker, _ = batches
    first = tracker.register("user-1", 1)
    tracker.record_outcome("user-1", True, batch_id=first)

    second = tracker.register("user-1", 2)
    assert second != first
    assert tracker.get("user-1").total == 2


def test_callback_errors_are_contained(calls):
    def broken(user_id, ok, total, jobs):
        raise RuntimeError("webhook down")

    tracker = BatchTracker(on_complete=broken)
    batch_id = tracker.register("user-1", 1)

    summary = tracker.record_outcome("user-1", True, batch_id=batch_id)
    assert summary is not None
    assert tracker.get("user-1") is None


def test_get_returns_copy(batches):
    tracker, _ = batches
    tracker.register("user-1", 1)
    tracker.get("user-1").total = 99
    assert tracker.get("user-1").total == 1
