"""Custom exception hierarchy for the media pipeline.

All exceptions inherit from PipelineError, enabling targeted handling
at handler and HTTP boundaries while preserving specific failure context.
"""


class PipelineError(Exception):
    """Base exception for all media pipeline errors."""

    def __init__(self, message: str, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.job_id:
            return f"[job={self.job_id}] {super().__str__()}"
        return super().__str__()


class ConfigError(PipelineError):
    """Raised when process configuration is missing or inconsistent."""


class StorageError(PipelineError):
    """Raised when an object store operation fails.

    ``status`` carries the HTTP status reported by the backend, or None
    when the request never produced a response.
    """

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        status: int | None = None,
        operation: str | None = None,
        key: str | None = None,
    ) -> None:
        self.status = status
        self.operation = operation
        self.key = key
        super().__init__(message, job_id)


class ObjectNotFoundError(StorageError):
    """Raised when the requested object does not exist."""


class UploadSessionNotFound(PipelineError):
    """Raised when finalize finds neither the object nor a multipart session."""

    def __init__(
        self, message: str, job_id: str | None = None, key: str | None = None
    ) -> None:
        self.key = key
        super().__init__(message, job_id)


class JobNotFound(PipelineError):
    """Raised when a job id has no row in the job store."""


class HandlerFailure(PipelineError):
    """Raised when a stage handler fails; counts against the retry budget."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.stage = stage
        super().__init__(message, job_id)


class TranscodeError(HandlerFailure):
    """Raised when ffmpeg audio extraction fails."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        input_path: str | None = None,
    ) -> None:
        self.input_path = input_path
        super().__init__(message, job_id, stage="transcode")


class ProviderError(HandlerFailure):
    """Raised when a speech recognition backend fails or times out."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        provider: str | None = None,
        cause: str | None = None,
    ) -> None:
        self.provider = provider
        self.cause = cause
        super().__init__(message, job_id, stage="asr")


class ExhaustedRetries(PipelineError):
    """Terminal failure: a stage used up its retry budget."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        stage: str | None = None,
        attempts: int = 0,
    ) -> None:
        self.stage = stage
        self.attempts = attempts
        super().__init__(message, job_id)
