"""
Exception hierarchy raised by the batched importer.

Every error carries a user-facing message that the CLI and HTTP layers
surface verbatim; nothing in the importer retries automatically.
"""

from __future__ import annotations

from typing import Sequence


class ImporterError(Exception):
    """Base class for importer failures."""


class ValidationError(ImporterError):
    """Raised when a package, manifest or request is rejected before any mutation."""

    def __init__(self, message: str, *, details: Sequence[str] | None = None) -> None:
        self.details = tuple(details or ())
        if self.details:
            message = f"{message} " + " ".join(self.details)
        super().__init__(message)


class StagingError(ImporterError):
    """Raised when a declared package table cannot be staged."""

    def __init__(self, filename: str, message: str, *, line_number: int | None = None) -> None:
        location = f"{filename}:{line_number}" if line_number is not None else filename
        super().__init__(f"Failed to stage {location}: {message}")
        self.filename = filename
        self.line_number = line_number


class JobNotFoundError(ImporterError):
    """Raised when an operation targets an unknown job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Import job {job_id} not found.")
        self.job_id = job_id


class PreconditionError(ImporterError):
    """Raised when an operation is not allowed in the job's current state."""

    def __init__(self, message: str, *, outstanding: int | None = None) -> None:
        super().__init__(message)
        self.outstanding = outstanding


class BatchConflictError(ImporterError):
    """Raised when a batch is already being processed by another caller."""

    def __init__(self, job_id: str, table: str, batch_number: int, operation: str) -> None:
        super().__init__(
            f"Batch {table}#{batch_number} ({operation}) of job {job_id} is already being processed."
        )
        self.job_id = job_id
        self.table = table
        self.batch_number = batch_number
        self.operation = operation


class BatchExecutionError(ImporterError):
    """Raised when applying a batch fails; the batch is left ``failed`` and retryable."""

    def __init__(self, job_id: str, table: str, batch_number: int, operation: str, message: str) -> None:
        super().__init__(f"Batch {table}#{batch_number} ({operation}) of job {job_id} failed: {message}")
        self.job_id = job_id
        self.table = table
        self.batch_number = batch_number
        self.operation = operation


def format_user_error(exc: BaseException) -> str:
    """Return the message shown to operators for ``exc``."""

    message = str(exc).strip()
    if isinstance(exc, ImporterError) and message:
        return message
    return message or exc.__class__.__name__


__all__ = [
    "ImporterError",
    "ValidationError",
    "StagingError",
    "JobNotFoundError",
    "PreconditionError",
    "BatchConflictError",
    "BatchExecutionError",
    "format_user_error",
]
