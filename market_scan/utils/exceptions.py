from __future__ import annotations

from fastapi import HTTPException


class ScanTrackerError(Exception):
    """Base exception for all market scan errors."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(ScanTrackerError):
    """Raised when a scan request is malformed (e.g. no vehicles)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class SubmissionError(ScanTrackerError):
    """Raised when the analysis service is unreachable or rejects a scan."""

    def __init__(self, message: str):
        super().__init__(message, status_code=502)


class NotFoundError(ScanTrackerError):
    """Raised when a scan job is missing or owned by someone else."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Scan '{job_id}' not found.", status_code=404)


class PersistenceError(ScanTrackerError):
    """Raised when the backing store cannot be read or written."""

    def __init__(self, message: str = "Scan storage is unavailable"):
        super().__init__(message, status_code=503)


class SubscriptionError(ScanTrackerError):
    """Raised when a live update channel cannot be established."""

    def __init__(self, message: str = "Live updates are unavailable"):
        super().__init__(message, status_code=503)


class AuthenticationError(ScanTrackerError):
    """Raised when authentication fails."""

    def __init__(self, message: str = "Invalid or missing API key"):
        super().__init__(message, status_code=401)


def scan_error_to_http(error: ScanTrackerError) -> HTTPException:
    """Convert a scan tracker error to a FastAPI HTTPException."""
    return HTTPException(status_code=error.status_code, detail=error.message)
