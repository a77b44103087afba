"""Exception taxonomy for the transcription daemon."""


class VoxError(Exception):
    """Base exception for all vox errors."""
    pass


class FileMissing(VoxError):
    """Raised when a watched file disappears while being polled."""
    pass


class StatUnavailable(VoxError):
    """Raised when a file exists but reports no size information."""
    pass


class ConversionError(VoxError):
    """Raised when audio cannot be converted to the canonical format."""
    pass


class UnsupportedFormat(ConversionError):
    """Raised for extensions the converter does not handle."""
    pass


class DecodeError(ConversionError):
    """Raised when the transcoder fails on otherwise supported input."""
    pass


class TranscriptionError(VoxError):
    """Base class for transcription backend failures."""
    pass


class RateLimited(TranscriptionError):
    """Raised when the backend reports too many requests."""
    pass


class NetworkError(TranscriptionError):
    """Raised on transport failures or unexpected HTTP status codes."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class TranscriptionTimeout(TranscriptionError):
    """Raised when the backend does not answer within its timeout."""
    pass


class MalformedTranscript(TranscriptionError):
    """Raised when the backend answers with an unusable payload."""
    pass


class ModelUnavailable(TranscriptionError):
    """Raised when a local model cannot be loaded."""
    pass


class ConsolidationError(VoxError):
    """Raised when output files cannot be moved or written."""
    pass
