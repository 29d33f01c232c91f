from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from httpx import AsyncClient, ASGITransport

from shorts_scheduler.api.main import create_app
from shorts_scheduler.errors import GenerationFailure, PostProcessingFailure, UploadFailure
from shorts_scheduler.models import AppConfig
from shorts_scheduler.queue import BatchTracker, InMemoryQueueStore, QueueManager, ScheduledJob
from shorts_scheduler.scheduler import Scheduler
from shorts_scheduler.services import Services
from shorts_scheduler.stages.base import (
    GeneratedVideo,
    PostProcessor,
    Uploader,
    VideoGenerator,
)

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeGenerator(VideoGenerator):
    """Writes a small file per request; prompts in ``fail_prompts`` fail."""

    def __init__(self, work_dir: Path, fail_prompts=()):
        self.work_dir = Path(work_dir)
        self.fail_prompts = set(fail_prompts)
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        if request.prompt in self.fail_prompts:
            raise GenerationFailure(f"model rejected prompt: {request.prompt}")
        self.work_dir.mkdir(parents=True, exist_ok=True)
        path = self.work_dir / f"{request.user_id}_{request.file_name}"
        path.write_bytes(b"video")
        return GeneratedVideo(local_path=str(path), source_url=f"https://cdn.test/{request.job_id}.mp4")


class FakePostProcessor(PostProcessor):
    """Renames the input to ``*_final.mp4`` like the real processor."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def process(self, input_path, options):
        self.calls.append((input_path, options))
        if self.fail:
            raise PostProcessingFailure("Caption overlay failed (permanent): boom")
        source = Path(input_path)
        final = source.with_name(f"{source.stem}_final.mp4")
        source.rename(final)
        return str(final)


class FakeUploader(Uploader):
    """Records uploads; titles in ``fail_titles`` fail."""

    def __init__(self, fail_titles=()):
        self.fail_titles = set(fail_titles)
        self.uploads = []

    async def upload(self, file_path, metadata, credential_ref):
        self.uploads.append((file_path, metadata, credential_ref))
        if metadata.title in self.fail_titles:
            raise UploadFailure("YouTube API error: quotaExceeded")
        return f"https://www.youtube.com/watch?v=vid{len(self.uploads)}"


def make_job(**overrides) -> ScheduledJob:
    data = {
        "scheduled_time": T0 + timedelta(minutes=10),
        "needs_generation": True,
        "prompt": "a cat surfing at sunset",
        "credential_ref": "refresh-token",
    }
    data.update(overrides)
    return ScheduledJob(**data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryQueueStore()


@pytest.fixture
def completions():
    """Batch completion callback invocations."""
    return []


@pytest.fixture
def tracker(clock, completions):
    return BatchTracker(
        on_complete=lambda user_id, ok, total, jobs: completions.append((user_id, ok, total, jobs)),
        clock=clock,
    )


@pytest.fixture
def manager(store, tracker, clock):
    return QueueManager(store, tracker, clock=clock)


@pytest.fixture
def generator(tmp_path):
    return FakeGenerator(tmp_path / "videos")


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def scheduler(manager, generator, uploader, clock):
    return Scheduler(
        manager,
        generator,
        uploader,
        FakePostProcessor(),
        tick_interval_s=0.01,
        generation_lead_time=timedelta(minutes=5),
        clock=clock,
    )


@pytest.fixture
def services(manager, scheduler):
    return Services(config=AppConfig(), manager=manager, scheduler=scheduler)


@pytest.fixture(scope="function")
async def client(services):
    app = create_app(services, start_scheduler=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
