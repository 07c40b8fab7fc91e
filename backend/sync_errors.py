"""
Error taxonomy for the sync engine.

Fetch and parse errors fail a job; conflict and validation errors are raised
synchronously to the caller before a job exists. Stuck jobs are never raised,
their error text only appears in the reaper's cleanup report.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""


class FetchError(SyncError):
    """Network failure, timeout, or non-success response from an upstream source."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(SyncError):
    """The fetched payload is structurally invalid for its format."""


class ConflictError(SyncError):
    """A non-terminal job already exists for the requested target."""

    def __init__(self, target_kind: str, target_id: int, job_id: Optional[int] = None):
        self.target_kind = target_kind
        self.target_id = target_id
        self.job_id = job_id
        if job_id is not None:
            message = f"A job is already active for {target_kind} {target_id} (job {job_id})"
        else:
            message = f"A job is already active for {target_kind} {target_id}"
        super().__init__(message)


class ValidationError(SyncError):
    """Malformed request data."""


class StuckJobError(SyncError):
    """A job stayed non-terminal past the configured timeout."""

    def __init__(self, job_id: int, timeout_minutes: int):
        self.job_id = job_id
        self.timeout_minutes = timeout_minutes
        super().__init__(
            f"Job stuck for more than {timeout_minutes} minutes - marked as failed"
        )


class InvalidTransitionError(SyncError):
    """Raised when a job state transition is not allowed."""
