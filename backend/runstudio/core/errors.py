"""
Error types shared by the form engine, the job client and the execution controller.
"""
from typing import Dict, Optional


class RunStudioError(Exception):
    """Base class for every error raised by runstudio."""


class FormValidationError(RunStudioError):
    """Raised when a form cannot be turned into a submission payload.

    ``errors`` maps field keys to messages. Errors that do not belong to a
    single field are stored under ``GENERAL_ERROR_KEY``.
    """

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        super().__init__("; ".join(f"{k}: {v}" for k, v in self.errors.items()))


GENERAL_ERROR_KEY = "_general"


class APIError(RunStudioError):
    """Raised by the job client when the backend call does not succeed."""


class UnauthorizedError(APIError):
    def __init__(self, message: str = "Your session has expired. Please login again."):
        super().__init__(message)


class NetworkError(APIError):
    def __init__(self, message: str = "Network error", cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class ServerError(APIError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class InsufficientCreditsError(APIError):
    def __init__(self, required: int = 0, available: int = 0):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Need {required} but only have {available}.")


class DecodingError(APIError):
    def __init__(self, message: str):
        super().__init__(f"Failed to decode response: {message}")


class InvalidTransition(RunStudioError):
    """Raised by the execution state table for an event the current state does not accept."""
