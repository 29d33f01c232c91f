"""Exception taxonomy for the scheduling engine.

Job-level failures (generation, post-processing, upload, missing artifact)
are contained by the scheduler and recorded on the job. Persistence failures
are logged and never crash the loop.
"""


class PipelineError(Exception):
    """Base class for all engine errors."""

    kind = "PipelineError"


class GenerationFailure(PipelineError):
    """External generation service reported an error."""

    kind = "GenerationFailure"


class GenerationTimeout(GenerationFailure):
    """Generation did not finish within the polling budget."""

    kind = "GenerationTimeout"


class PostProcessingFailure(PipelineError):
    """Caption overlay or music mixing failed."""

    kind = "PostProcessingFailure"


class UploadFailure(PipelineError):
    """Authentication or publish error from the upload backend."""

    kind = "UploadFailure"


class ArtifactMissing(PipelineError):
    """Artifact file vanished between generation and upload."""

    kind = "ArtifactMissing"


class PersistenceFailure(PipelineError):
    """Durable store could not be read or written."""

    kind = "PersistenceFailure"


class InvalidTransition(PipelineError):
    """Requested status change is not an edge of the job state graph."""

    kind = "InvalidTransition"


class JobExists(PipelineError):
    """A job with the same id is already queued for the user."""

    kind = "JobExists"


def error_kind(exc: BaseException) -> str:
    """Return the taxonomy name for an exception (class name for foreign ones)."""
    return getattr(exc, "kind", None) or type(exc).__name__
