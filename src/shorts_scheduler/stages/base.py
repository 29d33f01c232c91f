"""Abstract interfaces for the external collaborators the scheduler drives.

The scheduler only talks to these classes. Concrete adapters live next to
this module (Replicate, ffmpeg, YouTube); tests substitute fakes.
"""

from abc import ABC, abstractmethod
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ..queue.models import PostProcessingOptions, ScheduledJob


class GenerationRequest(BaseModel):
    """Inputs for one video generation call."""

    user_id: str
    job_id: str
    file_name: str
    prompt: str
    duration: int = Field(default=5, ge=1)
    aspect_ratio: str = "9:16"
    image_url: Optional[str] = None

    @classmethod
    def from_job(cls, job: ScheduledJob) -> "GenerationRequest":
        return cls(
            user_id=job.user_id,
            job_id=job.job_id,
            file_name=job.file_name,
            prompt=job.prompt or "",
            duration=job.duration,
            aspect_ratio=job.aspect_ratio,
            image_url=job.image_url,
        )


class GeneratedVideo(BaseModel):
    """Where a generated video ended up."""

    local_path: str = Field(..., description="Downloaded file")
    source_url: Optional[str] = Field(default=None, description="URL the service produced")


class PublishMetadata(BaseModel):
    """Metadata sent with an upload."""

    title: str = ""
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    privacy: Literal["private", "unlisted", "public"] = "private"

    @classmethod
    def from_job(cls, job: ScheduledJob) -> "PublishMetadata":
        return cls(
            title=job.title,
            description=job.description,
            tags=list(job.tags),
            privacy=job.privacy,
        )


class VideoGenerator(ABC):
    """Prompt in, local video file out."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GeneratedVideo:
        """Generate and download a video.

        Raises:
            GenerationFailure: Service reported an error
            GenerationTimeout: Polling budget exhausted
        """
        pass


class PostProcessor(ABC):
    """Caption overlay and background music."""

    @abstractmethod
    async def process(self, input_path: str, options: PostProcessingOptions) -> str:
        """Apply post-processing and return the path of the final file.

        The input file is removed on success.

        Raises:
            PostProcessingFailure: Any ffmpeg step failed
        """
        pass


class Uploader(ABC):
    """Publishes a local file and returns its public URL."""

    @abstractmethod
    async def upload(self, file_path: str, metadata: PublishMetadata, credential_ref: str) -> str:
        """Upload ``file_path`` using the credentials referenced by ``credential_ref``.

        Raises:
            UploadFailure: Authentication or publish error
        """
        pass
