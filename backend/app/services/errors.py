"""
Error taxonomy for the upload / translate / extract pipeline and the AI gateway.

Every class carries the HTTP status the API layer should answer with, so the
routes never have to branch on exception type.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CredentialError(PipelineError):
    """Forge credentials missing or rejected. Configuration problem; never retried."""

    status_code = 503


class UploadError(PipelineError):
    """Transfer failed mid-stream. Caller may retry from scratch; no partial resume."""

    status_code = 502
    retryable = True

    def __init__(self, message: str, bytes_transferred: int = 0):
        super().__init__(message)
        self.bytes_transferred = bytes_transferred


class UploadRejectedError(UploadError):
    """Validating path refused the file before any remote call was made."""

    status_code = 400
    retryable = False


class SubmissionError(PipelineError):
    """Malformed URN or the translation service refused the job."""

    status_code = 422


class TranslationServiceError(PipelineError):
    """Transport failure or 5xx from the translation service outside a poll."""

    status_code = 502
    retryable = True

    def __init__(self, message: str, remote_status: Optional[int] = None):
        super().__init__(message)
        self.remote_status = remote_status


class NotReadyError(PipelineError):
    """Extraction requested for a job that has not reached Success. Sequencing bug."""

    status_code = 409


class NoProviderAvailableError(PipelineError):
    """No configured AI provider supports the requested capability."""

    status_code = 503


class ProviderTimeoutError(PipelineError):
    """The selected AI provider did not answer within the call bound."""

    status_code = 504
    retryable = True

    def __init__(self, message: str, provider_id: Optional[str] = None):
        super().__init__(message)
        self.provider_id = provider_id


class ProviderError(PipelineError):
    """The selected AI provider failed for a reason other than a timeout."""

    status_code = 502

    def __init__(self, message: str, provider_id: Optional[str] = None):
        super().__init__(message)
        self.provider_id = provider_id
