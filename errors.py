"""
Error taxonomy for the Coloring Studio API.

Services raise these; ``main.py`` renders every one of them as
``{"success": false, "message": ...}`` with the matching status code.
"""

from typing import Optional


class StudioError(Exception):
    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code:
            self.status_code = status_code


class RequestValidationFailed(StudioError):
    status_code = 400


class SignatureMismatch(StudioError):
    status_code = 400


class NotFoundError(StudioError):
    status_code = 404


class QuotaExceededError(StudioError):
    status_code = 403


class ConflictError(StudioError):
    status_code = 409


class ConfigurationError(StudioError):
    """Deployment is missing a secret or endpoint. Not the caller's fault."""
    status_code = 500


class StorageError(StudioError):
    status_code = 500


class UpstreamError(StudioError):
    """A third-party gateway failed or answered with garbage. Retryable."""
    status_code = 502


class GenerationTimeout(UpstreamError):
    pass
