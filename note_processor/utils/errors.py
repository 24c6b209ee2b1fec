"""Custom exception hierarchy for the note processing pipeline.

All exceptions inherit from PipelineError, enabling targeted handling
at pipeline boundaries while preserving specific failure context.

Each class carries its own classification: ``code`` is the stable string
written to the session store, ``retryable`` decides whether the scheduler
may re-run the unit of work.
"""


class PipelineError(Exception):
    """Base exception for all note pipeline errors."""

    code = "pipeline_error"
    retryable = False
    # When True the bare code is recorded for the user instead of code + detail
    terse = False

    def __init__(self, message: str, session_id: str | None = None) -> None:
        self.session_id = session_id
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        if self.session_id:
            return f"[session={self.session_id}] {super().__str__()}"
        return super().__str__()

    @property
    def error_label(self) -> str:
        """String recorded in the session store for this failure."""
        if self.terse or not self.message or self.message == self.code:
            return self.code
        return f"{self.code}: {self.message}"


class TransportError(PipelineError):
    """Raised when a network call or remote HTTP exchange fails."""

    code = "transport_error"
    retryable = True

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        status_code: int | None = None,
        provider: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.provider = provider
        super().__init__(message, session_id)


class RemoteJobError(TransportError):
    """Raised when a remote transcription job reports status 'error'."""

    code = "remote_job_error"


class JobLostError(TransportError):
    """Raised when a polled remote job no longer exists (server restarted)."""

    code = "remote_job_lost"


class UnsupportedMediaError(PipelineError):
    """Raised when an input file's type cannot be transcribed."""

    code = "unsupported_media"
    terse = True

    def __init__(
        self, message: str, session_id: str | None = None, path: str | None = None
    ) -> None:
        self.path = path
        super().__init__(message, session_id)


class AudioNotFoundError(PipelineError):
    """Raised when the source audio artifact cannot be found."""

    code = "audio_not_found"
    terse = True

    def __init__(
        self, message: str, session_id: str | None = None, ref: str | None = None
    ) -> None:
        self.ref = ref
        super().__init__(message, session_id)


class EmptyTranscriptionError(PipelineError):
    """Raised when the provider returned no usable text for any chunk."""

    code = "backend_empty_output"
    terse = True


class TranscodeError(PipelineError):
    """Raised when ffmpeg transcoding or splitting fails."""

    code = "transcode_failed"

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        input_path: str | None = None,
    ) -> None:
        self.input_path = input_path
        super().__init__(message, session_id)


class PollTimeoutError(PipelineError):
    """Raised when a remote job does not finish within the polling bound."""

    code = "poll_timeout"

    def __init__(
        self, message: str, session_id: str | None = None, job_id: str | None = None
    ) -> None:
        self.job_id = job_id
        super().__init__(message, session_id)


class ConfigurationError(PipelineError):
    """Raised when a required provider setting is missing or invalid."""

    code = "configuration_error"


class SummarizationError(PipelineError):
    """Raised when the summarization provider cannot be reached or rejects us."""

    code = "summary_failed"
    retryable = True

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, session_id)


class SummarizationParseError(PipelineError):
    """Raised when model output is not the expected JSON document.

    Handled inside the summarization client, which degrades to raw text.
    """

    code = "summary_parse_error"

    def __init__(
        self, message: str, session_id: str | None = None, content: str = ""
    ) -> None:
        self.content = content
        super().__init__(message, session_id)


class StorageError(PipelineError):
    """Raised when local or object storage operations fail."""

    code = "storage_error"
    retryable = True

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message, session_id)


class UploadError(PipelineError):
    """Raised when delivering an artifact to remote storage fails."""

    code = "upload_failed"
    retryable = True

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, session_id)


class AuthError(UploadError):
    """Raised when exchanging the OAuth refresh token fails."""

    code = "oauth_token_error"
