"""Pipeline stage collaborators: generation, post-processing and upload."""

from .base import (
    GeneratedVideo,
    GenerationRequest,
    PostProcessor,
    PublishMetadata,
    Uploader,
    VideoGenerator,
)

__all__ = [
    "GeneratedVideo",
    "GenerationRequest",
    "PostProcessor",
    "PublishMetadata",
    "Uploader",
    "VideoGenerator",
]
